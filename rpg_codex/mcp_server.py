"""FastMCP server exposing the active game's codex as MCP tools.

Tools:
  - lookup_codex(ids)          — fetch entries by id
  - search_codex(query)        — keyword search over name, tags and description
  - store_codex_entry(...)     — upsert one entry through the normal codex rules

The tools read and write through a GameSession replaced via set_session() for
tests, or built from DATA_DIR (newest save loaded) when run as __main__.

Usage:
    uv run python -m rpg_codex.mcp_server
"""

from mcp.server.fastmcp import FastMCP

from rpg_codex.delta import CodexUpdate
from rpg_codex.models import CodexEntry
from rpg_codex.session import GameSession

mcp = FastMCP("rpg-codex")

_session: GameSession | None = None


def set_session(session: GameSession | None) -> None:
    """Replace the session the tools operate on (used in tests)."""
    global _session
    _session = session


def get_session() -> GameSession | None:
    return _session


def _codex() -> list[CodexEntry]:
    if _session is None or not _session.has_game:
        return []
    return _session.snapshot().codex


def _public(entry: CodexEntry) -> dict:
    return entry.model_dump(mode="json", exclude={"embedding"})


@mcp.tool()
def lookup_codex(ids: list[str]) -> list[dict]:
    """Look up codex entries by id and return the matching entries."""
    wanted = set(ids)
    return [_public(e) for e in _codex() if e.id in wanted]


@mcp.tool()
def search_codex(query: str) -> list[dict]:
    """Return codex entries whose name, tags or description contain every query word."""
    words = query.lower().split()
    if not words:
        return []
    results = []
    for entry in _codex():
        haystack = " ".join([entry.name, *entry.tags, entry.description]).lower()
        if all(w in haystack for w in words):
            results.append(_public(entry))
    return results


@mcp.tool()
async def store_codex_entry(
    id: str,
    name: str,
    description: str | None = None,
    type: str | None = None,
    tags: list[str] | None = None,
) -> dict:
    """Upsert a codex entry by id. Returns the stored entry."""
    if _session is None:
        raise ValueError("No game session is attached")
    fields = {"id": id, "name": name, "description": description, "type": type, "tags": tags}
    update = CodexUpdate.model_validate({k: v for k, v in fields.items() if v is not None})
    entry = _session.store_codex_entry(update)
    if entry is None:
        raise ValueError(f"Codex entry {id!r} was rejected")
    return _public(entry)


if __name__ == "__main__":
    import os
    from pathlib import Path

    from dotenv import load_dotenv

    from rpg_codex.llm import GeminiLLM
    from rpg_codex.storage import Storage

    load_dotenv()
    storage = Storage(Path(os.getenv("DATA_DIR", "data")))
    session = GameSession(storage, GeminiLLM(storage.get_settings))
    saves = storage.load_all_saves()
    if saves:
        session.load_saved_game(saves[0].save_id)
    set_session(session)
    mcp.run()
