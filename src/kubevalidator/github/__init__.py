import aiocache
from gidgethub import aiohttp as gh_aiohttp
from gidgethub.apps import get_installation_access_token, get_jwt
from sanic.log import logger

from kubevalidator import config as app_config
from kubevalidator.github.api import API, API_ERRORS


def app_jwt() -> str:
    return get_jwt(
        app_id=app_config.GITHUB_APP_ID, private_key=app_config.GITHUB_PRIVATE_KEY
    )


@aiocache.cached(ttl=app_config.ACCESS_TOKEN_TTL, key_builder=lambda fn, gh, id: id)
async def get_access_token(gh: gh_aiohttp.GitHubAPI, installation_id: int) -> str:
    logger.debug("Getting NEW installation access token for %d", installation_id)
    access_token_response = await get_installation_access_token(
        gh,
        installation_id=installation_id,
        app_id=app_config.GITHUB_APP_ID,
        private_key=app_config.GITHUB_PRIVATE_KEY,
    )

    return access_token_response["token"]


__all__ = ["API", "API_ERRORS", "app_jwt", "get_access_token"]
