"""
Editor activity tracker.

Turns editor events into STATUS_UPDATE sends without flooding the socket:

- selection changes only record activity
- edits record activity and schedule a debounced update (last one wins)
- editor switch, debug start/stop and window focus send immediately
- a periodic heartbeat resends the current status while online
- an idle poll flips to ``idle`` after the threshold; the next activity snaps
  back to ``online``

Updates identical to the last one sent are dropped, except the heartbeat
resend. Privacy mode and the file/workspace blacklists strip file details.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from fnmatch import fnmatch
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from devradar.client.config import ClientSettings
from devradar.models.presence import ActivityPayload

StatusSender = Callable[[str, Optional[Dict[str, Any]]], Awaitable[Any]]

KEYSTROKE_WINDOW_SECONDS = 60.0
MAX_KEYSTROKES_PER_MINUTE = 300


@dataclass(frozen=True)
class EditorSnapshot:
    """What the editor is showing right now."""

    file_path: Optional[str] = None
    language: Optional[str] = None
    project: Optional[str] = None
    workspace: Optional[str] = None
    untitled: bool = False

    @property
    def file_name(self) -> Optional[str]:
        if self.untitled:
            return "Untitled"
        if not self.file_path:
            return None
        return self.file_path.replace("\\", "/").rsplit("/", 1)[-1]


def _matches_any(value: str, patterns) -> bool:
    return any(fnmatch(value, pattern) for pattern in patterns)


class ActivityTracker:
    def __init__(
        self,
        settings: ClientSettings,
        send_status: StatusSender,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.send_status = send_status
        self.clock = clock
        self.sleep = sleep
        self.logger = logger or logging.getLogger("devradar.client.tracker")

        self.tracking = False
        self.editor = EditorSnapshot()
        self.current_status = "online"
        self.manual_status: Optional[str] = None
        self.session_started_at = clock()
        self.last_activity_at = clock()
        self._last_sent: Optional[Tuple] = None
        self._pending: Optional[asyncio.Task] = None
        self._loops: list = []
        self._keystrokes = 0
        self._keystroke_window_start = clock()

    # Lifecycle -------------------------------------------------------

    async def start(self, *, run_loops: bool = True) -> None:
        if self.tracking:
            return
        self.tracking = True
        now = self.clock()
        self.session_started_at = now
        self.last_activity_at = now
        if run_loops:
            self._loops = [
                asyncio.create_task(self._every(self.settings.heartbeat_interval_seconds, self.heartbeat)),
                asyncio.create_task(self._every(self.settings.idle_check_interval_seconds, self.check_idle)),
            ]
        await self.send_status_update()

    async def stop(self) -> None:
        if not self.tracking:
            return
        self.tracking = False
        self._cancel_pending()
        for task in self._loops:
            task.cancel()
        self._loops = []
        await self.send_status("offline", None)

    async def _every(self, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        while self.tracking:
            await self.sleep(interval)
            try:
                await tick()
            except Exception as e:
                self.logger.warning(f"[tracker] periodic tick failed: {e}")

    # Editor events ---------------------------------------------------

    async def on_selection_change(self) -> None:
        await self.record_activity()

    async def on_document_edit(self) -> None:
        await self.record_activity()
        self.record_keystroke()
        await self.schedule_update(immediate=False)

    async def on_editor_switch(self, editor: EditorSnapshot) -> None:
        self.editor = editor
        await self.record_activity()
        await self.schedule_update(immediate=True)

    async def on_debug_session(self) -> None:
        await self.record_activity()
        await self.schedule_update(immediate=True)

    async def on_window_focus(self, focused: bool) -> None:
        if not focused:
            await self.check_idle()
            return
        await self.record_activity()
        await self.schedule_update(immediate=True)

    # Status ----------------------------------------------------------

    async def record_activity(self) -> None:
        self.last_activity_at = self.clock()
        if self.current_status == "idle":
            # Coming back from idle is sent right away.
            self.current_status = "online"
            await self.send_status_update()

    def record_keystroke(self) -> None:
        now = self.clock()
        if now - self._keystroke_window_start > KEYSTROKE_WINDOW_SECONDS:
            self._keystrokes = 0
            self._keystroke_window_start = now
        self._keystrokes += 1

    def intensity(self) -> int:
        elapsed = self.clock() - self._keystroke_window_start
        if elapsed < 1.0:
            return 0
        per_minute = self._keystrokes / elapsed * 60.0
        return min(100, int(per_minute / MAX_KEYSTROKES_PER_MINUTE * 100))

    async def set_manual_status(self, status: str) -> None:
        self.manual_status = status
        await self.send_status_update()

    async def clear_manual_status(self) -> None:
        self.manual_status = None
        await self.send_status_update()

    async def check_idle(self) -> None:
        idle_for = self.clock() - self.last_activity_at
        if idle_for > self.settings.idle_timeout_seconds and self.current_status == "online":
            self.current_status = "idle"
            self.logger.debug("[tracker] user went idle")
            await self.send_status_update()

    async def heartbeat(self) -> None:
        if self.current_status == "online":
            await self.send_status_update(force=True)

    async def schedule_update(self, *, immediate: bool) -> None:
        self._cancel_pending()
        if immediate:
            await self.send_status_update()
            return
        self._pending = asyncio.create_task(self._debounced())

    async def _debounced(self) -> None:
        await self.sleep(self.settings.update_debounce_seconds)
        self._pending = None
        await self.send_status_update()

    def _cancel_pending(self) -> None:
        task, self._pending = self._pending, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    @property
    def status(self) -> str:
        return self.manual_status or self.current_status

    def build_activity(self) -> ActivityPayload:
        cfg = self.settings
        base = {"session_duration": int(self.clock() - self.session_started_at)}
        editor = self.editor
        if cfg.privacy_mode or (editor.file_path is None and not editor.untitled):
            return ActivityPayload(**base)

        file_name = editor.file_name
        if editor.workspace and _matches_any(editor.workspace, cfg.blacklisted_workspaces):
            return ActivityPayload(**base)
        if file_name and self._file_blacklisted(file_name, editor.file_path):
            return ActivityPayload(
                **base,
                language=editor.language,
                project=editor.project,
                workspace=editor.workspace,
            )

        return ActivityPayload(
            **base,
            file_name=file_name if cfg.show_file_name else None,
            language=editor.language if cfg.show_language else None,
            project=editor.project if cfg.show_project else None,
            workspace=editor.workspace,
            intensity=self.intensity(),
        )

    def _file_blacklisted(self, file_name: str, file_path: Optional[str]) -> bool:
        patterns = self.settings.blacklisted_files
        if _matches_any(file_name, patterns):
            return True
        return bool(file_path) and _matches_any(file_path.replace("\\", "/"), patterns)

    async def send_status_update(self, *, force: bool = False) -> bool:
        """Send the current status unless it repeats the last one. Returns True when sent."""
        if not self.tracking:
            return False
        activity = self.build_activity()
        status = self.status
        fingerprint = (status, activity.file_name, activity.language, activity.project, activity.workspace)
        if not force and fingerprint == self._last_sent:
            return False
        self._last_sent = fingerprint
        await self.send_status(status, activity.to_wire())
        self.logger.debug(f"[tracker] sent status {status} ({activity.file_name})")
        return True
