import logging
from contextlib import AsyncExitStack

import anyio
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from mediaproxy.api import HANDLED_ERRORS, router, upstream_error_handler
from mediaproxy.catalog import Catalog
from mediaproxy.config import Config
from mediaproxy.depends import bind
from mediaproxy.upstream import UpstreamClient

logger = logging.getLogger(__name__)


def make_app(
    upstream: UpstreamClient,
    config: Config,
) -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    for error in HANDLED_ERRORS:
        app.add_exception_handler(error, upstream_error_handler)
    bind(app, UpstreamClient, upstream)
    bind(app, Config, config)
    bind(app, Catalog, Catalog(upstream, list(config.folder_ids)))
    if config.static_dir:
        app.mount("/", StaticFiles(directory=config.static_dir, html=True), name="static")
    return app


async def main() -> None:
    import uvicorn

    from mediaproxy.upstream.drive import DriveUpstream
    from mediaproxy.upstream.memory import InMemoryUpstream
    from mediaproxy.upstream.s3 import S3Upstream

    config = Config.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    async with AsyncExitStack() as stack:
        upstream: UpstreamClient
        if config.upstream == "drive":
            upstream = await stack.enter_async_context(
                DriveUpstream.connect(config.drive_access_token, chunk_size=config.chunk_size)
            )
        elif config.upstream == "s3":
            upstream = await stack.enter_async_context(
                S3Upstream.connect(
                    access_key_id=config.s3_access_key_id,
                    access_key_secret=config.s3_secret_access_key,
                    region=config.s3_region,
                    bucket=config.s3_bucket,
                    endpoint=config.s3_endpoint,
                    chunk_size=config.chunk_size,
                )
            )
        else:
            # empty store, handy for poking at the HTTP surface
            upstream = InMemoryUpstream(chunk_size=config.chunk_size)
        app = make_app(upstream, config)

        logger.info(f"Serving {config.upstream} upstream at http://{config.host}:{config.port}")
        server = uvicorn.Server(uvicorn.Config(app, host=config.host, port=config.port, log_config=None))
        await server.serve()


def run() -> None:
    anyio.run(main)


if __name__ == "__main__":
    run()
