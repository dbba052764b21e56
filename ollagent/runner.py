"""Task runner: wires the agent core together and tracks active tasks."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from ollagent.approval import ApprovalGate
from ollagent.checkpoints import CheckpointManager
from ollagent.compactor import ContextCompactor
from ollagent.config import AppConfig
from ollagent.controller import AgentController, AgentRunResult
from ollagent.errors import SessionBusyError, TooManyActiveTasksError
from ollagent.events import EventSink, NullEventSink
from ollagent.file_lock import FileLockManager
from ollagent.llm import LLMClient
from ollagent.session import SessionStore
from ollagent.tools import ToolRegistry
from ollagent.types import Session

logger = logging.getLogger("ollagent.runner")


@dataclass
class ActiveTask:
    """A top-level task currently running for a session."""

    session_id: str
    task: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.time)


class AgentRunner:
    """Owns the shared services and admits top-level tasks.

    One task may run per session, and at most ``config.max_active_tasks``
    tasks run at once across sessions.
    """

    def __init__(
        self,
        config: AppConfig,
        store: SessionStore | None = None,
        llm: LLMClient | None = None,
        events: EventSink | None = None,
        registry: ToolRegistry | None = None,
        approvals: ApprovalGate | None = None,
    ):
        self.config = config
        self.store = store or SessionStore()
        self.llm = llm or LLMClient(config.ollama_host)
        self.events = events or NullEventSink()
        self.registry = registry or ToolRegistry(config.working_dir)
        self.approvals = approvals or ApprovalGate()
        self.compactor = ContextCompactor(self.llm)
        self.checkpoints = CheckpointManager(self.store, config.working_dir)
        self.file_locks = FileLockManager()
        self._active: dict[str, ActiveTask] = {}

    def create_session(self, title: str = "", **overrides) -> Session:
        """New session seeded from the runtime config."""
        fields = {
            "title": title,
            "mode": self.config.mode,
            "model": self.config.model,
            "auto_approve_commands": self.config.auto_approve_commands,
            "auto_approve_sensitive_edits": self.config.auto_approve_sensitive_edits,
            "sensitive_file_patterns": dict(self.config.sensitive_file_patterns),
        }
        fields.update(overrides)
        return self.store.create_session(**fields)

    def controller_for(self, session: Session) -> AgentController:
        return AgentController(
            session=session,
            config=self.config,
            registry=self.registry,
            store=self.store,
            llm=self.llm,
            approvals=self.approvals,
            events=self.events,
            compactor=self.compactor,
            checkpoints=self.checkpoints,
            file_locks=self.file_locks,
        )

    async def submit(
        self,
        session_id: str,
        task: str,
        mode: str | None = None,
        max_iterations: int | None = None,
    ) -> AgentRunResult:
        """Run *task* in the session and wait for its result."""
        if session_id in self._active:
            raise SessionBusyError(f"Session {session_id} already has an active task")
        if len(self._active) >= self.config.max_active_tasks:
            raise TooManyActiveTasksError(
                f"Too many active tasks ({len(self._active)}/{self.config.max_active_tasks})"
            )

        session = self.store.get_session(session_id)
        active = ActiveTask(session_id=session_id, task=task)
        self._active[session_id] = active
        logger.info("Task admitted (%d active)", len(self._active), extra={"session_id": session_id})
        try:
            return await self.controller_for(session).run(
                task,
                mode=mode,
                max_iterations=max_iterations,
                cancel_event=active.cancel_event,
            )
        finally:
            self._active.pop(session_id, None)

    def cancel(self, session_id: str) -> bool:
        """Signal the session's task to stop. Pending approvals resolve as declined."""
        active = self._active.get(session_id)
        if active is None:
            return False
        active.cancel_event.set()
        declined = self.approvals.cancel_all(session_id)
        logger.info(
            "Cancel requested (%d approval(s) declined)", declined,
            extra={"session_id": session_id},
        )
        return True

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    @property
    def active_tasks(self) -> list[ActiveTask]:
        return list(self._active.values())
