import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import aiohttp
import gidgethub
from gidgethub.abc import GitHubAPI

from kubevalidator.github.model import (
    CheckRun,
    CheckSuite,
    Content,
    Installation,
    PrFile,
    Repository,
)
from kubevalidator.metric import record_api_call

from sanic.log import logger

# Errors raised by a failed call to GitHub
API_ERRORS = (gidgethub.GitHubException, aiohttp.ClientError, asyncio.TimeoutError)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class API:
    gh: GitHubAPI
    installation: Optional[int]
    app_gh: Optional[GitHubAPI]
    jwt: Optional[str]

    call_count: int

    def __init__(
        self,
        gh: GitHubAPI,
        installation: Optional[int],
        app_gh: Optional[GitHubAPI] = None,
        jwt: Optional[str] = None,
    ):
        self.gh = gh
        self.installation = installation
        self.app_gh = app_gh
        self.jwt = jwt
        self.call_count = 0

    def _count(self, url: str) -> None:
        self.call_count += 1
        record_api_call(url)

    async def create_check_run(self, repo: Repository, check_run: CheckRun) -> CheckRun:
        url = f"{repo.api_path}/check-runs"
        self._count(url)
        payload: Dict[str, Any] = {
            "name": check_run.name,
            "head_sha": check_run.head_sha,
            "status": check_run.status,
        }
        if check_run.started_at is not None:
            payload["started_at"] = format_timestamp(check_run.started_at)
        logger.debug("Creating check run %s on sha %s", url, check_run.head_sha)
        data = await self.gh.post(url, data=payload)
        return CheckRun.model_validate(data)

    async def update_check_run(self, repo: Repository, check_run: CheckRun) -> None:
        if check_run.id is None:
            raise ValueError("Cannot update a check run without id")
        url = f"{repo.api_path}/check-runs/{check_run.id}"
        self._count(url)
        payload: Dict[str, Any] = {"status": check_run.status}
        if check_run.conclusion is not None:
            payload["conclusion"] = check_run.conclusion
        if check_run.completed_at is not None:
            payload["completed_at"] = format_timestamp(check_run.completed_at)
        if check_run.output is not None:
            output = check_run.output.model_dump(
                exclude={"annotations"}, exclude_none=True
            )
            output["annotations"] = [a.to_payload() for a in check_run.output.annotations]
            payload["output"] = output
        logger.debug("Updating check run %d, %s", check_run.id, url)
        await self.gh.patch(url, data=payload)

    async def list_check_suites(
        self, repo: Repository, ref: str, app_id: Optional[int] = None
    ) -> List[CheckSuite]:
        url = f"{repo.api_path}/commits/{quote(ref, safe='')}/check-suites"
        if app_id is not None:
            url += f"?app_id={app_id}"
        self._count(url)
        logger.debug("Get check suites for ref %s", url)
        data = await self.gh.getitem(url)
        return [CheckSuite.model_validate(item) for item in data["check_suites"]]

    async def rerequest_check_suite(self, repo: Repository, suite_id: int) -> None:
        url = f"{repo.api_path}/check-suites/{suite_id}/rerequest"
        self._count(url)
        logger.debug("Re-requesting check suite %d", suite_id)
        await self.gh.post(url, data={})

    async def get_pull_request_files(
        self, repo: Repository, number: int
    ) -> AsyncIterator[PrFile]:
        url = f"{repo.api_path}/pulls/{number}/files"
        self._count(url)
        logger.debug("Getting files for PR #%d %s", number, url)
        async for item in self.gh.getiter(url):
            yield PrFile.model_validate(item)

    async def get_content(
        self, repo: Repository, path: str, ref: Optional[str] = None
    ) -> Content:
        url = f"{repo.api_path}/contents/{quote(path)}"
        if ref is not None:
            url += f"?ref={quote(ref, safe='')}"
        self._count(url)
        logger.debug("Get file content: %s", url)
        return Content.model_validate(await self.gh.getitem(url))

    async def list_installations(self, per_page: int) -> List[Installation]:
        if self.app_gh is None or self.jwt is None:
            raise ValueError("Listing installations needs an app client and JWT")
        url = f"/app/installations?per_page={per_page}"
        self._count(url)
        data = await self.app_gh.getitem(url, jwt=self.jwt)
        return [Installation.model_validate(item) for item in data]
