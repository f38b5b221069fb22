import base64
from http import HTTPStatus

from gidgethub import BadRequest

from kubevalidator.github.model import (
    CheckSuite,
    Content,
    Installation,
    PrFile,
)

HEAD_SHA = "a" * 40

REPOSITORY = {
    "id": 500,
    "name": "repo",
    "full_name": "org/repo",
    "owner": {"login": "org"},
    "html_url": "https://github.com/org/repo",
    "private": False,
}

VALID_CONFIG = """\
apiVersion: v1beta1
kind: KubeValidatorConfig
spec:
  manifests:
    - glob: k8s/*.yaml
      schemas:
        - version: "1.29.0"
"""

VALID_DEPLOYMENT = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 1
"""


class FakeAPI:
    """Records every gateway call; ``fail`` maps a method name to the error it raises."""

    def __init__(
        self,
        *,
        contents=None,
        files=None,
        suites=None,
        installations=0,
        fail=None,
    ):
        self.contents = contents or {}
        self.files = files or []
        self.suites = suites or []
        self.installations = installations
        self.fail = fail or {}
        self.calls = []
        self.call_count = 0
        self.updated = []

    def _record(self, name, *args):
        self.calls.append((name, *args))
        self.call_count += 1
        if name in self.fail:
            raise self.fail[name]

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    async def create_check_run(self, repo, check_run):
        self._record("create_check_run", check_run)
        return check_run.model_copy(update={"id": 77})

    async def update_check_run(self, repo, check_run):
        self._record("update_check_run", check_run)
        self.updated.append(check_run)

    async def list_check_suites(self, repo, ref, app_id=None):
        self._record("list_check_suites", ref, app_id)
        return [CheckSuite.model_validate(s) for s in self.suites]

    async def rerequest_check_suite(self, repo, suite_id):
        self._record("rerequest_check_suite", suite_id)

    async def get_pull_request_files(self, repo, number):
        self._record("get_pull_request_files", number)
        for item in self.files:
            yield PrFile.model_validate(item)

    async def get_content(self, repo, path, ref=None):
        self._record("get_content", path, ref)
        value = self.contents.get(path)
        if value is None:
            raise BadRequest(HTTPStatus.NOT_FOUND)
        if isinstance(value, Exception):
            raise value
        if isinstance(value, str):
            value = value.encode("utf-8")
        return Content(
            type="file",
            encoding="base64",
            path=path,
            content=base64.b64encode(value).decode(),
            html_url=f"https://github.com/org/repo/blob/{HEAD_SHA}/{path}",
        )

    async def list_installations(self, per_page):
        self._record("list_installations", per_page)
        return [Installation(id=i) for i in range(min(per_page, self.installations))]


def pr_file(filename, status="modified"):
    return {"sha": "b" * 40, "filename": filename, "status": status}

