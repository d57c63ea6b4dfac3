"""Small JSON status API served from the bot process.

Started when WEB_PORT is set. Reads session state straight from RadioCog.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import aiohttp.web as web

from radio.errors import ConnectionFailure

if TYPE_CHECKING:
    from discord.ext import commands

log = logging.getLogger(__name__)

routes = web.RouteTableDef()


def _get_cog(request: web.Request):
    cog = request.app["bot"].get_cog("RadioCog")
    if cog is None:
        raise web.HTTPServiceUnavailable(text="RadioCog not loaded")
    return cog


def _guild_id(request: web.Request) -> int:
    try:
        return int(request.match_info["guild_id"])
    except ValueError:
        raise web.HTTPBadRequest(text="guild_id must be an integer")


# ── Health ───────────────────────────────────────────────────────────────

@routes.get("/health")
async def health(request: web.Request) -> web.Response:
    cog = _get_cog(request)
    return web.json_response({
        "status": "ok",
        "guilds": len(request.app["bot"].guilds),
        "sessions": len(cog.sessions),
        "library": cog.store.stats(),
    })


# ── Sessions ─────────────────────────────────────────────────────────────

@routes.get("/api/guilds/{guild_id}/session")
async def get_session(request: web.Request) -> web.Response:
    cog = _get_cog(request)
    session = cog.sessions.find(_guild_id(request))
    if session is None:
        raise web.HTTPNotFound(text="No active session")
    return web.json_response(session.snapshot())


@routes.post("/api/guilds/{guild_id}/skip")
async def skip(request: web.Request) -> web.Response:
    cog = _get_cog(request)
    session = cog.sessions.find(_guild_id(request))
    if session is None or session.current is None:
        raise web.HTTPBadRequest(text="Nothing is playing")
    try:
        skipped = await session.skip()
    except ConnectionFailure as exc:
        raise web.HTTPConflict(text=str(exc))
    return web.json_response({"status": "skipped" if skipped else "in_transition"})


# ── Server lifecycle ─────────────────────────────────────────────────────

def create_app(bot: commands.Bot) -> web.Application:
    app = web.Application()
    app["bot"] = bot
    app.router.add_routes(routes)
    return app


async def start_web_server(bot: commands.Bot, port: int = 8080) -> web.AppRunner:
    runner = web.AppRunner(create_app(bot))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    log.info("Web API listening on :%d", port)
    return runner
