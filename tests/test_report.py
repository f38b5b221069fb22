from datetime import timedelta

import pytest

from kubevalidator.candidates import Candidate, Candidates
from kubevalidator.github.model import Annotation
from kubevalidator.report import MAX_OUTPUT_LENGTH, CheckRunReporter, conclusion_for

from helpers import HEAD_SHA, FakeAPI


def annotation(level="failure", path="k8s/a.yaml", line=None):
    return Annotation(path=path, annotation_level=level, message="msg", start_line=line)


def test_conclusion_is_success_without_failures():
    assert conclusion_for([]) == "success"
    assert conclusion_for([annotation("warning"), annotation("notice")]) == "success"
    assert conclusion_for([annotation("warning"), annotation("failure")]) == "failure"


@pytest.mark.asyncio
async def test_create_initial_records_start(repo):
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    check_run = await reporter.create_initial()

    (_, sent), = api.called("create_check_run")
    assert sent.status == "in_progress"
    assert sent.name == "kubevalidator"
    assert sent.head_sha == HEAD_SHA
    assert check_run.id == 77
    assert reporter.started_at == sent.started_at
    assert reporter.started_at.tzinfo is not None


@pytest.mark.asyncio
async def test_finalize_success(repo):
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()
    started_at = reporter.started_at

    candidate = Candidate(path="k8s/a.yaml", status="added", annotations=[])
    conclusion = await reporter.finalize(Candidates([candidate]), [])

    assert conclusion == "success"
    (updated,) = api.updated
    assert updated.id == 77
    assert updated.status == "completed"
    assert updated.conclusion == "success"
    assert updated.started_at == started_at
    assert updated.completed_at - started_at >= timedelta(0)
    assert updated.output.title == "1 manifest valid"
    assert "k8s/a.yaml" in updated.output.summary
    assert "Completed in" in updated.output.summary
    assert updated.output.annotations == []


@pytest.mark.asyncio
async def test_finalize_failure_keeps_annotation_order(repo):
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()

    found = [
        annotation("failure", "k8s/b.yaml"),
        annotation("warning", "k8s/a.yaml"),
        annotation("failure", "k8s/a.yaml"),
    ]
    candidates = Candidates(
        [
            Candidate(path="k8s/b.yaml", status="added", load_error="Not Found"),
            Candidate(path="k8s/a.yaml", status="added", annotations=found[1:]),
        ]
    )
    assert await reporter.finalize(candidates, found) == "failure"

    (updated,) = api.updated
    assert updated.conclusion == "failure"
    assert updated.output.annotations == found
    assert updated.output.title == "2 problems found in 2 of 2 manifests"
    assert "unreadable" in updated.output.summary


@pytest.mark.asyncio
async def test_annotations_are_capped(repo, monkeypatch):
    monkeypatch.setattr("kubevalidator.config.MAX_ANNOTATIONS", 2)
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()

    found = [annotation(line=i) for i in range(1, 6)]
    await reporter.finalize(Candidates(), found)

    (updated,) = api.updated
    assert updated.output.annotations == found[:2]
    assert "3 further findings" in updated.output.text
    assert updated.conclusion == "failure"
    assert updated.output.title == "No manifests changed"


@pytest.mark.asyncio
async def test_config_missing_is_neutral(repo):
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()
    assert await reporter.finalize_config_missing("not found") == "neutral"

    (updated,) = api.updated
    assert updated.conclusion == "neutral"
    assert updated.output.title == "Configuration missing"
    assert ".github/kubevalidator.yaml" in updated.output.summary
    assert updated.output.annotations == []


@pytest.mark.asyncio
async def test_config_invalid_has_one_annotation(repo):
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()
    config_error = annotation(path=".github/kubevalidator.yaml", line=2)
    assert await reporter.finalize_config_invalid(config_error) == "failure"

    (updated,) = api.updated
    assert updated.output.title == "Configuration invalid"
    assert updated.output.annotations == [config_error]


@pytest.mark.asyncio
async def test_check_run_is_finalized_once(repo):
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)

    with pytest.raises(RuntimeError):
        await reporter.finalize_no_pull_request()

    await reporter.create_initial()
    await reporter.finalize_changeset_error(RuntimeError("boom"))
    with pytest.raises(RuntimeError):
        await reporter.finalize(Candidates(), [])
    assert len(api.updated) == 1
    assert api.updated[0].conclusion == "failure"
    assert "boom" in api.updated[0].output.summary


@pytest.mark.asyncio
async def test_failed_update_is_not_retried(repo):
    api = FakeAPI(fail={"update_check_run": RuntimeError("down")})
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()
    with pytest.raises(RuntimeError, match="down"):
        await reporter.finalize(Candidates(), [])
    assert reporter.finalized
    with pytest.raises(RuntimeError, match="already finalized"):
        await reporter.finalize(Candidates(), [])


@pytest.mark.asyncio
async def test_overflow_listing_stays_within_github_limit(repo):
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()

    found = [annotation(path=f"k8s/{i}.yaml", line=i) for i in range(1500)]
    await reporter.finalize(Candidates(), found)

    (updated,) = api.updated
    assert len(updated.output.annotations) == 50
    assert "1450 further findings" in updated.output.text
    assert "... and 1250 more" in updated.output.text
    assert len(updated.output.text) <= MAX_OUTPUT_LENGTH


@pytest.mark.asyncio
async def test_summary_rows_are_capped(repo):
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()

    candidates = Candidates(
        Candidate(path=f"k8s/{i}.yaml", status="added", annotations=[])
        for i in range(500)
    )
    await reporter.finalize(candidates, [])

    (updated,) = api.updated
    assert updated.output.title == "500 manifests valid"
    assert "... and 300 more" in updated.output.summary
    assert "k8s/199.yaml" in updated.output.summary
    assert "k8s/200.yaml" not in updated.output.summary


@pytest.mark.asyncio
async def test_oversized_text_is_truncated(repo, monkeypatch):
    monkeypatch.setattr("kubevalidator.config.MAX_ANNOTATIONS", 0)
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()

    huge = Annotation(
        path="k8s/a.yaml", annotation_level="failure", message="x" * 100_000
    )
    await reporter.finalize(Candidates(), [huge])

    (updated,) = api.updated
    assert updated.output.annotations == []
    assert len(updated.output.text) == MAX_OUTPUT_LENGTH
    assert updated.output.text.endswith("... output truncated")


@pytest.mark.asyncio
async def test_config_missing_explains_glob_matching(repo):
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()
    await reporter.finalize_config_missing("not found")

    assert "`*` also matches `/`" in api.updated[0].output.text


@pytest.mark.asyncio
async def test_internal_error_is_failure(repo):
    api = FakeAPI()
    reporter = CheckRunReporter(api, repo, HEAD_SHA)
    await reporter.create_initial()

    assert await reporter.finalize_internal_error(OSError("disk gone")) == "failure"
    (updated,) = api.updated
    assert updated.output.title == "Internal error"
    assert "OSError: disk gone" in updated.output.summary
