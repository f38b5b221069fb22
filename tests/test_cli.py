from typer.testing import CliRunner

from kubevalidator.cli import app

from helpers import VALID_DEPLOYMENT

runner = CliRunner()


def test_validate_clean_files(tmp_path):
    manifest = tmp_path / "app.yaml"
    manifest.write_text(VALID_DEPLOYMENT)

    result = runner.invoke(app, ["validate", str(manifest), "--version", "1.29.0"])

    assert result.exit_code == 0, result.output
    assert "1 files checked against Kubernetes 1.29.0" in result.output


def test_validate_reports_failures(tmp_path):
    good = tmp_path / "good.yaml"
    good.write_text(VALID_DEPLOYMENT)
    bad = tmp_path / "bad.yaml"
    bad.write_text("apiVersion: v1\nkind: Service\nmetadata: {}\n")

    result = runner.invoke(app, ["validate", str(good), str(bad), "--strict"])

    assert result.exit_code == 1
    assert "metadata.name or metadata.generateName is required" in result.output
    assert str(bad) in result.output
    assert "2 files checked against Kubernetes latest (strict)" in result.output


def test_validate_warnings_do_not_fail(tmp_path):
    manifest = tmp_path / "old.yaml"
    manifest.write_text(
        "apiVersion: extensions/v1beta1\nkind: Deployment\nmetadata:\n  name: web\n"
    )

    result = runner.invoke(app, ["validate", str(manifest), "--version", "1.15"])

    assert result.exit_code == 0, result.output
    assert "warning" in result.output
