import re

from prometheus_client import Counter, Gauge, Histogram

request_counter = Counter(
    "kubevalidator_num_req", "Total number of requests", labelnames=["path"]
)
webhook_counter = Counter(
    "kubevalidator_num_webhook", "Total number of webhooks", labelnames=["event"]
)
webhook_skipped_counter = Counter(
    "kubevalidator_num_webhook_skipped",
    "Total number of webhooks that were not handled",
    labelnames=["event"],
)

error_counter = Counter(
    "kubevalidator_error_counter", "Total number of errors", labelnames=["context"]
)

check_suite_outcome_counter = Counter(
    "kubevalidator_check_suite_outcome",
    "Number of processed check suites by outcome",
    labelnames=["outcome"],
)

annotation_counter = Counter(
    "kubevalidator_annotations",
    "Number of annotations reported",
    labelnames=["level"],
)

api_call_count = Counter(
    "kubevalidator_num_api_calls",
    "Total number of GitHub API calls",
    labelnames=["endpoint"],
)

installation_count = Gauge(
    "kubevalidator_installations", "Number of app installations last seen"
)

validation_seconds = Histogram(
    "kubevalidator_validation_seconds",
    "Time spent loading and validating the candidates of one check suite",
)

_ENDPOINT_PATTERNS = [
    (re.compile(r"^/app/installations/\d+/access_tokens$"), "installation_token"),
    (re.compile(r"^/app/installations"), "installations"),
    (re.compile(r"^/repos/[^/]+/[^/]+/contents/"), "contents/xxx"),
    (re.compile(r"^/repos/[^/]+/[^/]+/check-runs"), "check-runs"),
    (re.compile(r"^/repos/[^/]+/[^/]+/check-suites/\d+/rerequest$"), "rerequest"),
    (re.compile(r"^/repos/[^/]+/[^/]+/check-suites"), "check-suites"),
    (re.compile(r"^/repos/[^/]+/[^/]+/commits/[^/]+/check-suites"), "check-suites"),
    (re.compile(r"^/repos/[^/]+/[^/]+/pulls/\d+/files"), "pulls/files"),
]


def _normalize_api_endpoint(endpoint: str) -> str:
    path = endpoint.split("?", 1)[0]
    for pattern, label in _ENDPOINT_PATTERNS:
        if pattern.search(path):
            return label
    if not path.startswith("/"):
        return path
    return "other"


def record_api_call(endpoint: str) -> None:
    api_call_count.labels(endpoint=_normalize_api_endpoint(endpoint)).inc()
