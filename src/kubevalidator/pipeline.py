from __future__ import annotations

from enum import Enum
from typing import Awaitable, List, Optional

from gidgethub import BadRequest
from sanic.log import logger

from kubevalidator import config as app_config
from kubevalidator.cache import Cache
from kubevalidator.candidates import match_candidates
from kubevalidator.github.api import API, API_ERRORS
from kubevalidator.github.model import (
    Annotation,
    CheckRunEvent,
    CheckSuiteEvent,
    InstallationEvent,
    InstallationRepositoriesEvent,
    PrFile,
    PullRequestEvent,
    Repository,
    WebhookEvent,
)
from kubevalidator.metric import (
    check_suite_outcome_counter,
    error_counter,
    installation_count,
    validation_seconds,
    webhook_skipped_counter,
)
from kubevalidator.model import (
    ConfigMalformed,
    ConfigMissing,
    ConfigOutcome,
    ConfigPresent,
    InvalidConfig,
    parse_config,
)
from kubevalidator.report import CheckRunReporter, conclusion_for

SUITE_ACTIONS = ("created", "requested", "rerequested")
PULL_REQUEST_ACTIONS = ("opened", "reopened")


class SuiteOutcome(Enum):
    skipped = 1
    in_flight = 2
    create_failed = 3
    config_missing = 4
    config_invalid = 5
    no_pull_request = 6
    changeset_error = 7
    success = 8
    failure = 9
    finalize_failed = 10
    internal_error = 11


class NoPullRequest(Exception):
    pass


async def resolve_config(api: API, repo: Repository, ref: str) -> ConfigOutcome:
    path = app_config.CONFIG_FILE_PATH

    if app_config.OVERRIDE_CONFIG is not None:
        with open(app_config.OVERRIDE_CONFIG) as fh:
            raw_config = fh.read()
        source = app_config.OVERRIDE_CONFIG
    else:
        try:
            content = await api.get_content(repo, path, ref=ref)
        except BadRequest as e:
            if e.status_code == 404:
                logger.debug("No %s in %s", path, repo)
                return ConfigMissing("not found")
            logger.warning("Couldn't fetch %s from %s: %s", path, repo, e)
            return ConfigMissing(f"not readable: {e}")
        except API_ERRORS as e:
            logger.warning("Couldn't fetch %s from %s: %s", path, repo, e)
            return ConfigMissing(f"not readable: {e}")

        try:
            if content.type != "file":
                raise ValueError(f"{path} is a {content.type}, not a file")
            raw_config = content.decoded_content()
        except ValueError as e:
            return ConfigMalformed(
                Annotation(
                    path=path,
                    annotation_level="failure",
                    title="Invalid configuration",
                    message=str(e),
                )
            )
        source = content.html_url or path

    try:
        config = parse_config(raw_config, source)
    except InvalidConfig as e:
        logger.debug("Invalid config file: \n%s", e)
        return ConfigMalformed(e.to_annotation(path))

    return ConfigPresent(config, source)


async def changed_file_list(api: API, event: CheckSuiteEvent) -> List[PrFile]:
    pull_requests = event.check_suite.pull_requests
    if len(pull_requests) == 0:
        raise NoPullRequest(f"Check suite {event.check_suite.id} has no pull request")
    pr = pull_requests[0]
    return [f async for f in api.get_pull_request_files(event.repository, pr.number)]


async def process_check_suite(
    event: CheckSuiteEvent, api: API, cache: Optional[Cache] = None
) -> SuiteOutcome:
    if event.action not in SUITE_ACTIONS:
        logger.debug("Ignoring check suite action %s", event.action)
        return SuiteOutcome.skipped

    suite = event.check_suite
    key = f"{event.repository.slug}/{suite.id}/{suite.head_sha}"
    if cache is not None and not cache.claim(key):
        outcome = SuiteOutcome.in_flight
    else:
        try:
            outcome = await _run_check_suite(event, api)
        finally:
            if cache is not None:
                cache.release(key)

    logger.info(
        "Check suite %d on %s: %s, API calls: %d",
        suite.id,
        event.repository,
        outcome.name,
        api.call_count,
    )
    check_suite_outcome_counter.labels(outcome=outcome.name).inc()
    return outcome


async def _run_check_suite(event: CheckSuiteEvent, api: API) -> SuiteOutcome:
    repo = event.repository
    head_sha = event.check_suite.head_sha
    reporter = CheckRunReporter(api, repo, head_sha)

    try:
        await reporter.create_initial()
    except API_ERRORS as e:
        # TODO respond 500 so GitHub redelivers the event
        logger.error("Couldn't create check run on %s: %s", head_sha, e)
        error_counter.labels(context="check_run_create").inc()
        return SuiteOutcome.create_failed

    try:
        return await _validate_suite(event, api, reporter)
    except Exception as e:
        logger.error(
            "Validation of check suite %d failed", event.check_suite.id, exc_info=True
        )
        error_counter.labels(context="check_suite").inc()
        if reporter.finalized:
            return SuiteOutcome.finalize_failed
        return await _finish(
            reporter.finalize_internal_error(e), SuiteOutcome.internal_error
        )


async def _validate_suite(
    event: CheckSuiteEvent, api: API, reporter: CheckRunReporter
) -> SuiteOutcome:
    repo = event.repository
    head_sha = event.check_suite.head_sha

    outcome = await resolve_config(api, repo, head_sha)
    if isinstance(outcome, ConfigMissing):
        return await _finish(
            reporter.finalize_config_missing(outcome.reason),
            SuiteOutcome.config_missing,
        )
    if isinstance(outcome, ConfigMalformed):
        return await _finish(
            reporter.finalize_config_invalid(outcome.annotation),
            SuiteOutcome.config_invalid,
        )

    try:
        changed_files = await changed_file_list(api, event)
    except NoPullRequest as e:
        logger.debug("%s", e)
        return await _finish(
            reporter.finalize_no_pull_request(), SuiteOutcome.no_pull_request
        )
    except API_ERRORS as e:
        logger.error("Couldn't list changed files: %s", e)
        error_counter.labels(context="changed_files").inc()
        return await _finish(
            reporter.finalize_changeset_error(e), SuiteOutcome.changeset_error
        )

    candidates = match_candidates(outcome.config, changed_files)
    logger.debug(
        "%d of %d changed files are validation candidates",
        len(candidates),
        len(changed_files),
    )

    annotations: List[Annotation] = []
    with validation_seconds.time():
        annotations += await candidates.load_bytes(api, repo, head_sha)
        annotations += candidates.validate()

    return await _finish(
        reporter.finalize(candidates, annotations),
        SuiteOutcome[conclusion_for(annotations)],
    )


async def _finish(finalization: Awaitable, outcome: SuiteOutcome) -> SuiteOutcome:
    try:
        await finalization
    except API_ERRORS as e:
        logger.error("Couldn't complete check run: %s", e)
        error_counter.labels(context="check_run_update").inc()
        return SuiteOutcome.finalize_failed
    return outcome


async def process_pull_request_event(event: PullRequestEvent, api: API) -> bool:
    """Re-request our check suite when a pull request is opened or reopened.

    Check suites created before the pull request existed carry no pull
    request, so they are run again. Only an unambiguous match, exactly one
    suite of this app on the head ref, is re-requested.
    """
    if event.action not in PULL_REQUEST_ACTIONS:
        return False

    repo = event.repository
    head_ref = event.pull_request.head.ref
    try:
        suites = await api.list_check_suites(
            repo, head_ref, app_id=app_config.GITHUB_APP_ID
        )
    except API_ERRORS as e:
        logger.error("Couldn't list check suites for %s: %s", head_ref, e)
        error_counter.labels(context="check_suite_list").inc()
        return False

    if len(suites) != 1:
        logger.debug(
            "%d check suites on %s, not re-requesting", len(suites), head_ref
        )
        return False

    try:
        await api.rerequest_check_suite(repo, suites[0].id)
    except API_ERRORS as e:
        logger.error("Couldn't re-request check suite %d: %s", suites[0].id, e)
        error_counter.labels(context="check_suite_rerequest").inc()
        return False
    logger.info("Re-requested check suite %d for %s", suites[0].id, event.pull_request)
    return True


async def process_check_run_event(event: CheckRunEvent, api: API) -> bool:
    if event.action != "rerequested":
        return False

    suite = event.check_run.check_suite
    if suite is None:
        logger.warning("Check run %s has no check suite", event.check_run.id)
        return False

    try:
        await api.rerequest_check_suite(event.repository, suite.id)
    except API_ERRORS as e:
        logger.error("Couldn't re-request check suite %d: %s", suite.id, e)
        error_counter.labels(context="check_suite_rerequest").inc()
        return False
    return True


async def log_installation_count(api: API) -> int:
    """Log the number of installations.

    Keeps track of eligibility for listing in the GitHub Marketplace, which
    needs more than ``MARKETPLACE_THRESHOLD`` installations.
    """
    threshold = app_config.MARKETPLACE_THRESHOLD
    installations = await api.list_installations(per_page=threshold + 1)
    count = len(installations)
    installation_count.set(count)
    if count > threshold:
        logger.info("%d installations. get thee to the market!", count)
    else:
        logger.info("%d installations. keep it up!", count)
    return count


async def process_event(
    event: WebhookEvent, api: API, cache: Optional[Cache] = None
) -> bool:
    if isinstance(event, CheckSuiteEvent):
        await process_check_suite(event, api, cache=cache)
        return True
    if isinstance(event, PullRequestEvent):
        return await process_pull_request_event(event, api)
    if isinstance(event, CheckRunEvent):
        return await process_check_run_event(event, api)
    if isinstance(event, (InstallationEvent, InstallationRepositoriesEvent)):
        try:
            await log_installation_count(api)
        except (*API_ERRORS, ValueError) as e:
            logger.error("Couldn't count installations: %s", e)
            error_counter.labels(context="installation_count").inc()
            return False
        return True

    logger.info("ignoring %s", event.name)
    webhook_skipped_counter.labels(event=event.name).inc()
    return False
