from __future__ import annotations

from datetime import datetime, timezone
import textwrap
from typing import Iterable, List, Optional

import humanize
from sanic.log import logger
from tabulate import tabulate

from kubevalidator import config as app_config
from kubevalidator.candidates import Candidates
from kubevalidator.github.api import API
from kubevalidator.github.model import (
    Annotation,
    CheckRun,
    CheckRunOutput,
    Conclusion,
    Repository,
)
from kubevalidator.metric import annotation_counter

EXAMPLE_CONFIG = textwrap.dedent(
    """\
    apiVersion: v1beta1
    kind: KubeValidatorConfig
    spec:
      manifests:
        - glob: config/*.yaml
          schemas:
            - version: "1.29.0"
              strict: true
    """
)

# GitHub rejects a check run output summary or text above this length
MAX_OUTPUT_LENGTH = 65535

_STATE_ICONS = {
    "valid": ":white_check_mark:",
    "invalid": ":x:",
    "unreadable": ":x:",
    "pending": ":yellow_circle:",
}


def conclusion_for(annotations: Iterable[Annotation]) -> Conclusion:
    if any(a.is_failure for a in annotations):
        return "failure"
    return "success"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _table(rows: List[tuple], headers: tuple) -> str:
    shown = rows[: app_config.MAX_TABLE_ROWS]
    table = tabulate(shown, headers=headers, tablefmt="github")
    if len(rows) > len(shown):
        table += f"\n\n... and {len(rows) - len(shown)} more"
    return table


def _clip(text: Optional[str]) -> Optional[str]:
    if text is None or len(text) <= MAX_OUTPUT_LENGTH:
        return text
    marker = "\n\n... output truncated"
    return text[: MAX_OUTPUT_LENGTH - len(marker)] + marker


class CheckRunReporter:
    """Owns the single check run written for one check suite.

    The run is created in progress by ``create_initial`` and completed by
    exactly one of the ``finalize*`` methods. A second finalization raises.
    """

    check_run: Optional[CheckRun]
    finalized: bool

    def __init__(self, api: API, repo: Repository, head_sha: str):
        self.api = api
        self.repo = repo
        self.head_sha = head_sha
        self.check_run = None
        self.finalized = False

    @property
    def started_at(self) -> Optional[datetime]:
        return self.check_run.started_at if self.check_run is not None else None

    async def create_initial(self) -> CheckRun:
        started_at = datetime.now(timezone.utc)
        check_run = CheckRun.make_app_check_run(
            head_sha=self.head_sha, status="in_progress", started_at=started_at
        )
        created = await self.api.create_check_run(self.repo, check_run)
        # the local start time is authoritative for the duration
        self.check_run = created.model_copy(update={"started_at": started_at})
        logger.debug("Created check run %s on %s", self.check_run.id, self.head_sha)
        return self.check_run

    async def finalize_config_missing(self, reason: str) -> Conclusion:
        summary = (
            f"No `{app_config.CONFIG_FILE_PATH}` found in this repository "
            f"({reason}), so no manifests were validated."
        )
        text = (
            f"Add `{app_config.CONFIG_FILE_PATH}` to validate Kubernetes manifests "
            f"changed in pull requests:\n\n```yaml\n{EXAMPLE_CONFIG}```\n\n"
            "Globs are matched against the full path and `*` also matches `/`, "
            "so `config/*.yaml` covers files in subdirectories of `config` too. "
            "The first matching entry wins."
        )
        return await self._complete(
            "neutral", "Configuration missing", summary, text=text
        )

    async def finalize_config_invalid(self, annotation: Annotation) -> Conclusion:
        summary = (
            f"### :x: `{annotation.path}` could not be parsed:\n\n"
            f"```\n{annotation.message}\n```"
        )
        return await self._complete(
            "failure",
            "Configuration invalid",
            summary,
            text=f"Expected a configuration like:\n\n```yaml\n{EXAMPLE_CONFIG}```",
            annotations=[annotation],
        )

    async def finalize_no_pull_request(self) -> Conclusion:
        return await self._complete(
            "neutral",
            "No pull request",
            "This commit is not part of an open pull request, nothing to validate.",
        )

    async def finalize_changeset_error(self, error: Exception) -> Conclusion:
        summary = (
            "### :x: The list of changed files could not be retrieved:\n\n"
            f"```\n{error}\n```\n\nRe-run the check to try again."
        )
        return await self._complete("failure", "Could not list changed files", summary)

    async def finalize_internal_error(self, error: Exception) -> Conclusion:
        summary = (
            "### :x: Validation stopped on an unexpected error:\n\n"
            f"```\n{type(error).__name__}: {error}\n```\n\nRe-run the check to try again."
        )
        return await self._complete("failure", "Internal error", summary)

    async def finalize(
        self, candidates: Candidates, annotations: List[Annotation]
    ) -> Conclusion:
        conclusion = conclusion_for(annotations)
        failures = [a for a in annotations if a.is_failure]
        if len(candidates) == 0:
            title = "No manifests changed"
        elif conclusion == "success":
            title = f"{_plural(len(candidates), 'manifest')} valid"
        else:
            failed_files = {a.path for a in failures}
            title = (
                f"{_plural(len(failures), 'problem')} found in "
                f"{len(failed_files)} of {_plural(len(candidates), 'manifest')}"
            )

        if len(candidates) == 0:
            summary = "No changed file matches a glob of the configuration."
        else:
            rows = [
                (
                    _STATE_ICONS[c.state],
                    c.path,
                    c.state,
                    len(c.annotations or []) + (1 if c.load_error else 0),
                )
                for c in candidates
            ]
            summary = "# Manifests\n" + _table(
                rows, headers=("", "File", "Result", "Findings")
            )

        return await self._complete(conclusion, title, summary, annotations=annotations)

    async def _complete(
        self,
        conclusion: Conclusion,
        title: str,
        summary: str,
        text: Optional[str] = None,
        annotations: Iterable[Annotation] = (),
    ) -> Conclusion:
        if self.check_run is None:
            raise RuntimeError("Check run has not been created")
        if self.finalized:
            raise RuntimeError(f"Check run {self.check_run.id} is already finalized")
        # no second attempt, even if the update below fails
        self.finalized = True

        annotations = list(annotations)
        completed_at = datetime.now(timezone.utc)
        duration = completed_at - self.check_run.started_at
        summary += f"\n\nCompleted in **{humanize.naturaldelta(duration)}**."

        sent = annotations[: app_config.MAX_ANNOTATIONS]
        remaining = annotations[len(sent) :]
        if remaining:
            rows = [
                (a.path, a.start_line or "", a.annotation_level, a.message)
                for a in remaining
            ]
            more = f"### {_plural(len(remaining), 'further finding')}\n" + _table(
                rows, headers=("File", "Line", "Level", "Message")
            )
            text = f"{text}\n\n{more}" if text else more

        check_run = self.check_run.model_copy(
            update={
                "status": "completed",
                "conclusion": conclusion,
                "completed_at": completed_at,
                "output": CheckRunOutput(
                    title=title,
                    summary=_clip(summary),
                    text=_clip(text),
                    annotations=sent,
                ),
            }
        )
        logger.debug(
            "Completing check run %s as %s with %d annotations",
            check_run.id,
            conclusion,
            len(annotations),
        )
        await self.api.update_check_run(self.repo, check_run)
        self.check_run = check_run
        for annotation in annotations:
            annotation_counter.labels(level=annotation.annotation_level).inc()
        return conclusion
