from types import SimpleNamespace

import pytest

from kubevalidator.github.model import parse_event
from kubevalidator.metric import error_counter
from kubevalidator.web import api_for_event, process_github_event

from helpers import HEAD_SHA, REPOSITORY, FakeAPI


def make_check_run_event(action="rerequested"):
    payload = {
        "action": action,
        "installation": {"id": 99},
        "repository": REPOSITORY,
        "check_run": {
            "id": 123,
            "head_sha": HEAD_SHA,
            "name": "kubevalidator",
            "status": "completed",
            "conclusion": "failure",
            "started_at": "2026-02-16T10:00:00Z",
            "completed_at": "2026-02-16T10:01:00Z",
            "app": {"id": 1234, "slug": "kubevalidator"},
            "check_suite": {"id": 111},
        },
    }
    return SimpleNamespace(event="check_run", data=payload)


def make_app():
    return SimpleNamespace(
        config=SimpleNamespace(),
        ctx=SimpleNamespace(aiohttp_session=object(), cache={}),
    )


@pytest.fixture
def fake_api(monkeypatch, tmp_path):
    api = FakeAPI()

    async def fake_api_for_event(_app, _event):
        return api

    monkeypatch.setattr("kubevalidator.web.api_for_event", fake_api_for_event)
    monkeypatch.setattr("kubevalidator.config.DISKCACHE_DIR", str(tmp_path / "cache"))
    return api


@pytest.mark.asyncio
async def test_check_run_rerequest_is_dispatched(fake_api):
    handled = await process_github_event(make_app(), make_check_run_event(), "d-1")
    assert handled
    assert fake_api.called("rerequest_check_suite") == [("rerequest_check_suite", 111)]


@pytest.mark.asyncio
async def test_unknown_event_is_not_handled(fake_api):
    event = SimpleNamespace(event="issues", data={"action": "opened"})
    assert not await process_github_event(make_app(), event, "d-2")
    assert fake_api.calls == []


@pytest.mark.asyncio
async def test_malformed_payload_is_counted(fake_api):
    before = error_counter.labels(context="event_parse")._value.get()

    event = SimpleNamespace(event="check_suite", data={"action": "requested"})
    assert not await process_github_event(make_app(), event, "d-3")

    after = error_counter.labels(context="event_parse")._value.get()
    assert after == before + 1
    assert fake_api.calls == []


@pytest.mark.asyncio
async def test_dispatch_exception_is_tolerated(fake_api, monkeypatch):
    async def broken_process_event(*_args, **_kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr("kubevalidator.web.process_event", broken_process_event)
    before = error_counter.labels(context="event_dispatch")._value.get()

    assert not await process_github_event(make_app(), make_check_run_event(), "d-4")

    after = error_counter.labels(context="event_dispatch")._value.get()
    assert after == before + 1


@pytest.mark.asyncio
async def test_installation_events_use_app_jwt(monkeypatch):
    monkeypatch.setattr("kubevalidator.web.app_jwt", lambda: "app-jwt")
    event = parse_event("installation", {"action": "created", "installation": {"id": 7}})

    api = await api_for_event(make_app(), event)

    assert api.installation == 7
    assert api.jwt == "app-jwt"
    assert api.app_gh is api.gh


@pytest.mark.asyncio
async def test_repository_events_use_installation_token(monkeypatch):
    requested = []

    async def fake_get_access_token(_gh, installation_id):
        requested.append(installation_id)
        return "installation-token"

    monkeypatch.setattr("kubevalidator.web.get_access_token", fake_get_access_token)
    event = parse_event("check_run", make_check_run_event().data)

    api = await api_for_event(make_app(), event)

    assert requested == [99]
    assert api.installation == 99
    assert api.gh.oauth_token == "installation-token"
    assert api.jwt is None
