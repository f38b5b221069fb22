from sanic import Sanic, response, Request
import aiohttp
import cachetools
import gidgethub
from gidgethub import sansio
from gidgethub import aiohttp as gh_aiohttp
import pydantic
from sanic.log import logger
import sanic.log
from prometheus_client import core
from prometheus_client.exposition import generate_latest

from kubevalidator import config
from kubevalidator.cache import get_cache
from kubevalidator.github import API, app_jwt, get_access_token
from kubevalidator.github.model import (
    InstallationEvent,
    InstallationRepositoriesEvent,
    WebhookEvent,
    parse_event,
)
from kubevalidator.logger import configure_logging
from kubevalidator.metric import error_counter, request_counter, webhook_counter
from kubevalidator.pipeline import process_event

USER_AGENT = "kubevalidator"


def app_client(app) -> gh_aiohttp.GitHubAPI:
    return gh_aiohttp.GitHubAPI(app.ctx.aiohttp_session, USER_AGENT)


async def client_for_installation(app, installation_id: int) -> gh_aiohttp.GitHubAPI:
    token = await get_access_token(app_client(app), installation_id)

    return gh_aiohttp.GitHubAPI(
        app.ctx.aiohttp_session,
        USER_AGENT,
        oauth_token=token,
        cache=app.ctx.cache,
    )


async def api_for_event(app, event: WebhookEvent) -> API:
    if isinstance(event, (InstallationEvent, InstallationRepositoriesEvent)):
        app_gh = app_client(app)
        return API(app_gh, event.installation.id, app_gh=app_gh, jwt=app_jwt())
    if event.installation is None:
        return API(app_client(app), None)
    gh = await client_for_installation(app, event.installation.id)
    return API(gh, event.installation.id)


async def process_github_event(app, event: sansio.Event, delivery_id: str) -> bool:
    webhook_counter.labels(event=event.event).inc()
    logger.debug("Delivery %s: %s", delivery_id, event.event)

    try:
        typed_event = parse_event(event.event, event.data)
    except pydantic.ValidationError:
        error_counter.labels(context="event_parse").inc()
        logger.error("Couldn't parse %s event %s", event.event, delivery_id, exc_info=True)
        return False

    try:
        api = await api_for_event(app, typed_event)
        with get_cache() as cache:
            return await process_event(typed_event, api, cache=cache)
    except Exception:
        error_counter.labels(context="event_dispatch").inc()
        logger.error("Exception raised when dispatching event", exc_info=True)
        return False


def create_app():

    app = Sanic("kubevalidator")
    app.update_config(config)

    configure_logging(sanic.log.logger)

    app.ctx.cache = cachetools.LRUCache(maxsize=500)

    @app.listener("before_server_start")
    async def init(app, loop):
        logger.debug("Creating aiohttp session")
        app.ctx.aiohttp_session = aiohttp.ClientSession()

        app_info = await app_client(app).getitem("/app", jwt=app_jwt())
        app.ctx.app_info = app_info
        logger.info("Running as GitHub App %s", app_info.get("slug"))

    @app.listener("after_server_stop")
    async def close(app, loop):
        await app.ctx.aiohttp_session.close()

    @app.on_request
    async def on_request(request: Request):
        if request.path == "/metrics":
            return
        request_counter.labels(path=request.path).inc()

    @app.get("/status")
    async def status(request):
        logger.debug("status check")
        return response.text("ok")

    @app.route("/webhook", methods=["POST"])
    async def github(request):
        logger.debug("Webhook received")

        try:
            event = sansio.Event.from_http(
                request.headers, request.body, secret=app.config.GITHUB_WEBHOOK_SECRET
            )
        except gidgethub.ValidationFailure as e:
            logger.warning("Rejected webhook: %s", e)
            return response.json({"error": str(e)}, status=401)
        except gidgethub.BadRequest as e:
            logger.warning("Malformed webhook: %s", e)
            return response.json({"error": str(e)}, status=400)

        handled = await process_github_event(app, event, event.delivery_id)
        return response.json({"handled": handled})

    @app.get("/metrics")
    async def metrics(request):
        return response.raw(generate_latest(core.REGISTRY))

    return app
