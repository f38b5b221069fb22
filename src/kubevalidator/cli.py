import asyncio
from contextlib import asynccontextmanager
import logging
from pathlib import Path
from typing import List, Optional

import aiohttp
import cachetools
from gidgethub import aiohttp as gh_aiohttp
from sanic import Sanic
from sanic.worker.loader import AppLoader
from tabulate import tabulate
import typer

from kubevalidator.github import API, app_jwt, get_access_token
from kubevalidator.github.model import Repository, User
from kubevalidator.logger import configure_logging
from kubevalidator.manifest import ManifestValidator
from kubevalidator.pipeline import log_installation_count
from kubevalidator.web import USER_AGENT, create_app

logger = logging.getLogger("kubevalidator")

app = typer.Typer()
httpcache = cachetools.LRUCache(maxsize=500)


@app.callback()
def init():
    configure_logging(logger)


@app.command()
def serve(host: str = "0.0.0.0", port: int = 8000, workers: int = 1):
    loader = AppLoader(factory=create_app)
    web_app = loader.load()
    web_app.prepare(host=host, port=port, workers=workers)
    Sanic.serve(primary=web_app, app_loader=loader)


@app.command()
def validate(
    paths: List[Path],
    version: Optional[str] = typer.Option(None, help="Kubernetes version, e.g. 1.29.0"),
    strict: bool = typer.Option(False, help="Reject unknown fields"),
):
    """Validate local manifest files."""
    validator = ManifestValidator(version, strict)
    rows = []
    failed = False
    for path in paths:
        for annotation in validator.validate(str(path), path.read_bytes()):
            failed = failed or annotation.is_failure
            rows.append(
                (
                    annotation.path,
                    annotation.start_line or "",
                    annotation.annotation_level,
                    annotation.message,
                )
            )

    if rows:
        typer.echo(tabulate(rows, headers=("File", "Line", "Level", "Message")))
    typer.echo(f"{len(paths)} files checked against {validator.title}")
    if failed:
        raise typer.Exit(code=1)


@asynccontextmanager
async def app_api(installation: Optional[int] = None):
    async with aiohttp.ClientSession() as session:
        app_gh = gh_aiohttp.GitHubAPI(session, USER_AGENT)
        gh = app_gh
        if installation is not None:
            token = await get_access_token(app_gh, installation)
            gh = gh_aiohttp.GitHubAPI(
                session, USER_AGENT, oauth_token=token, cache=httpcache
            )

        yield API(gh, installation, app_gh=app_gh, jwt=app_jwt())


@app.command()
def installations():
    """Log the number of installations of the app."""

    async def handle():
        async with app_api() as api:
            return await log_installation_count(api)

    typer.echo(asyncio.run(handle()))


@app.command()
def rerequest(repo: str, suite_id: int, installation: int):
    """Ask GitHub to run a check suite again, e.g. ``org/repo 123 456``."""
    owner, name = repo.split("/", 1)
    repository = Repository(name=name, full_name=repo, owner=User(login=owner))

    async def handle():
        async with app_api(installation) as api:
            await api.rerequest_check_suite(repository, suite_id)

    asyncio.run(handle())
    logger.info("Re-requested check suite %d on %s", suite_id, repo)
