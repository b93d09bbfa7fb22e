"""GameSession — the single owner of the GameState for one play session.

There is no global store. A session is constructed with its collaborators
(storage, gateway, retriever) and torn down with close().

  start_new_game(config)   opening narration, codex seeded from initial_codex
  load_saved_game(id)      restore a save slot (older saves get model defaults)
  play(action)             one turn: orchestrator → apply_delta → auto-save
  apply_update(delta)      the only path that produces new state
  expand_codex(id)         AI enrichment of one codex entry, via the same upsert

Turns are single-flight: while one is awaiting the model, another play() (or
any other state-changing call) raises TurnInProgressError instead of queuing.
The orchestrator always works on a deep-copied snapshot; a failed turn leaves
the committed state untouched.

Codex changes schedule a background re-embedding task. Those tasks are owned
by the session and cancelled on close().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from rpg_codex.delta import CodexUpdate, StateDelta
from rpg_codex.llm import LLM
from rpg_codex.models import CodexEntry, GameState, GameTurn, TemporaryRule, WorldConfig
from rpg_codex.pipeline.lore import LoreRetriever
from rpg_codex.pipeline.orchestrator import TurnResult, expand_codex_entry, play_turn, start_game
from rpg_codex.pipeline.reconcile import apply_delta
from rpg_codex.settings import AppSettings
from rpg_codex.storage import Storage

logger = logging.getLogger(__name__)


class TurnInProgressError(RuntimeError):
    """Raised when a state-changing call arrives while a turn is in flight."""


class NoActiveGameError(LookupError):
    """Raised when an operation needs a game but none is started or loaded."""


class EmptyActionError(ValueError):
    """Raised when a turn is submitted with a blank action."""


class GameSession:
    def __init__(
        self,
        storage: Storage,
        llm: LLM | None,
        retriever: LoreRetriever | None = None,
        settings: Callable[[], AppSettings] | None = None,
        autosave: bool = True,
    ) -> None:
        self._storage = storage
        self._llm = llm
        self.retriever = retriever if retriever is not None else LoreRetriever(llm)
        self._settings = settings or storage.get_settings
        self._autosave = autosave
        self._state: GameState | None = None
        self._lock = asyncio.Lock()
        self._sync_tasks: set[asyncio.Task] = set()
        self.last_suggestions: list[str] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def has_game(self) -> bool:
        return self._state is not None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def snapshot(self) -> GameState:
        """Deep copy of the committed state. Raises NoActiveGameError."""
        return self._require_state().model_copy(deep=True)

    def _require_state(self) -> GameState:
        if self._state is None:
            raise NoActiveGameError("No active game. Start a new game or load a save.")
        return self._state

    def _require_llm(self) -> LLM:
        if self._llm is None:
            raise RuntimeError("This session has no LLM gateway")
        return self._llm

    def _require_idle(self) -> None:
        if self._lock.locked():
            raise TurnInProgressError("A turn is already in progress.")

    @asynccontextmanager
    async def _single_flight(self) -> AsyncIterator[None]:
        self._require_idle()
        async with self._lock:
            yield

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_new_game(self, config: WorldConfig) -> GameState:
        async with self._single_flight():
            narration = await start_game(config, self._require_llm(), self._settings())
            state = GameState(
                world_config=config.model_copy(deep=True),
                history=[GameTurn(type="narration", content=narration)],
                codex=[entry.model_copy(deep=True) for entry in config.initial_codex],
            )
            self.last_suggestions = []
            self._commit(state)
            self._reindex(state.codex)
            logger.info("New game started: %s", config.character.name or "unnamed hero")
            return self.snapshot()

    def load_saved_game(self, save_id: int) -> GameState | None:
        """Make a save slot the active game. Returns None if the slot doesn't exist."""
        self._require_idle()
        slot = self._storage.get_save(save_id)
        if slot is None:
            return None
        self._state = GameState.model_validate(slot.model_dump(include=set(GameState.model_fields)))
        self.last_suggestions = []
        self._reindex(self._state.codex)
        logger.info("Loaded save %d", save_id)
        return self.snapshot()

    async def close(self) -> None:
        """End the session: cancel background syncs and drop the active game."""
        tasks = list(self._sync_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._sync_tasks.clear()
        self._state = None
        self.last_suggestions = []

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def play(self, action: str) -> TurnResult:
        """Run one player turn and commit the result."""
        action = action.strip()
        if not action:
            raise EmptyActionError("Action must not be empty")

        async with self._single_flight():
            snapshot = self.snapshot()
            history = [*snapshot.history, GameTurn(type="action", content=action)]
            result = await play_turn(
                snapshot.world_config,
                history,
                snapshot.summary,
                snapshot,
                llm=self._require_llm(),
                retriever=self.retriever,
                settings=self._settings(),
            )
            kept = result.truncated_history if result.truncated_history is not None else history
            snapshot.history = [*kept, GameTurn(type="narration", content=result.narration)]
            snapshot.summary = result.new_summary
            self._apply(snapshot, result.state_delta)
            self.last_suggestions = result.suggestions
            return result

    def apply_update(self, delta: StateDelta | None) -> GameState:
        """Apply a delta to the committed state, auto-save, and return a snapshot."""
        self._require_idle()
        self._apply(self._require_state(), delta)
        return self.snapshot()

    def _apply(self, base: GameState, delta: StateDelta | None) -> None:
        self._commit(apply_delta(base, delta))
        if delta is not None and delta.codex_update:
            self._schedule_sync()

    def _commit(self, state: GameState) -> None:
        self._state = state
        if self._autosave:
            self._storage.save_game(state)

    # ------------------------------------------------------------------
    # Config edits and codex
    # ------------------------------------------------------------------

    def set_temporary_rules(self, rules: list[TemporaryRule]) -> GameState:
        self._require_idle()
        state = self._require_state().model_copy(deep=True)
        state.world_config.temporary_rules = [r.model_copy() for r in rules]
        self._commit(state)
        return self.snapshot()

    def get_codex_entry(self, entry_id: str) -> CodexEntry | None:
        for entry in self._require_state().codex:
            if entry.id == entry_id:
                return entry.model_copy(deep=True)
        return None

    def store_codex_entry(self, update: CodexUpdate) -> CodexEntry | None:
        """Upsert one codex entry through the normal reconciliation rules."""
        state = self.apply_update(StateDelta(codex_update=[update]))
        return next((e for e in state.codex if e.id == update.id), None)

    async def expand_codex(self, entry_id: str) -> CodexEntry:
        """Ask the model to enrich one entry. Raises KeyError if the id is unknown."""
        async with self._single_flight():
            state = self._require_state()
            entry = next((e for e in state.codex if e.id == entry_id), None)
            if entry is None:
                raise KeyError(entry_id)
            update = await expand_codex_entry(state.world_config, entry, self._require_llm())
            self._apply(self._require_state(), StateDelta(codex_update=[update]))
        expanded = self.get_codex_entry(entry_id)
        if expanded is None:
            raise KeyError(entry_id)
        return expanded

    # ------------------------------------------------------------------
    # Vector index
    # ------------------------------------------------------------------

    def _reindex(self, codex: list[CodexEntry]) -> None:
        self.retriever.store.clear()
        self.retriever.load_embeddings(codex)
        self._schedule_sync()

    def _schedule_sync(self) -> None:
        if self._state is None or self.retriever.embedder is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; codex sync deferred to the next turn")
            return
        codex = [entry.model_copy(deep=True) for entry in self._state.codex]
        task = loop.create_task(self.retriever.sync(codex))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_done)

    def _sync_done(self, task: asyncio.Task) -> None:
        self._sync_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Codex vector sync failed", exc_info=task.exception())

    async def wait_for_sync(self) -> None:
        """Wait for pending background syncs (used by tests and shutdown)."""
        while self._sync_tasks:
            tasks = list(self._sync_tasks)
            await asyncio.gather(*tasks, return_exceptions=True)
            self._sync_tasks.difference_update(tasks)
