"""Request-scoped accessors for the objects create_app() puts on app.state."""

from fastapi import Request

from rpg_codex.llm import LLM
from rpg_codex.session import GameSession
from rpg_codex.storage import Storage


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_session(request: Request) -> GameSession:
    return request.app.state.session


def get_llm(request: Request) -> LLM:
    return request.app.state.llm
