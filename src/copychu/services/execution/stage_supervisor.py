from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
import itertools
import logging
import os
import re
import signal
import time

from copychu.contracts.errors.errors import StageLaunchError
from copychu.core.runtime.run_types import FailureReason, LogEvent, StageOutcome, StageResult
from copychu.services.channel.event_hub import EventHub

logger = logging.getLogger("copychu.supervisor")

PROGRESS_RE = re.compile(r"\[(\d+)/(\d+)\]")
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def parse_progress(text: str) -> dict[str, int] | None:
    """Workers print "[3/20]" style counters; pick the first one up."""
    m = PROGRESS_RE.search(text)
    if m is None:
        return None
    return {"current": int(m.group(1)), "total": int(m.group(2))}


@dataclass
class StageHandle:
    run_id: str
    stage_name: str
    argv: list[str]
    process: asyncio.subprocess.Process
    started_at: datetime
    last_output: float = field(default_factory=time.monotonic)
    cancel_requested: bool = False
    stalled: bool = False
    progress: dict[str, int] | None = None
    result: StageResult | None = None
    task: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def done(self) -> bool:
        return self.result is not None


class StageSupervisor:
    """
    Runs pipeline stages as child processes.

    - stdout/stderr are read line by line; every line becomes a LogEvent with
      a per-run sequence number, in arrival order across both streams.
    - exit code 0 => Success, non-zero => Failure, explicit cancel() =>
      Cancelled regardless of the exit code.
    - no output for `idle_timeout_s` => Failure with reason "stalled".
    - cancel() sends SIGTERM (to the whole process group when enabled) and
      escalates to SIGKILL after `grace_period_s`.
    """

    def __init__(
        self,
        hub: EventHub,
        *,
        grace_period_s: float = 5.0,
        idle_timeout_s: float | None = 900.0,
        line_limit_bytes: int = 1024 * 1024,
        kill_process_group: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._hub = hub
        self._grace_period_s = grace_period_s
        self._idle_timeout_s = idle_timeout_s or None
        self._line_limit = line_limit_bytes
        self._use_group = kill_process_group and os.name != "nt"
        self._clock = clock
        self._seqs: dict[str, itertools.count] = {}
        self._handles: dict[tuple[str, str], StageHandle] = {}

    # -------- sequence numbers --------

    def next_seq(self, run_id: str) -> int:
        counter = self._seqs.get(run_id)
        if counter is None:
            counter = self._seqs[run_id] = itertools.count(1)
        return next(counter)

    def release_run(self, run_id: str) -> None:
        self._seqs.pop(run_id, None)

    # -------- lifecycle --------

    async def start(
        self,
        run_id: str,
        stage_name: str,
        command: Sequence[str],
        *,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> StageHandle:
        argv = [*command, *args]
        if not argv:
            raise StageLaunchError(f"Stage '{stage_name}' has an empty command")

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=full_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._line_limit,
                start_new_session=self._use_group,
            )
        except (OSError, ValueError) as exc:
            raise StageLaunchError(f"Could not start stage '{stage_name}' ({argv[0]}): {exc}") from exc

        handle = StageHandle(
            run_id=run_id,
            stage_name=stage_name,
            argv=argv,
            process=proc,
            started_at=self._clock(),
        )
        self._handles[(run_id, stage_name)] = handle
        handle.task = asyncio.create_task(self._supervise(handle), name=f"stage:{run_id}:{stage_name}")
        logger.info("Stage %s of run %s started (pid=%s): %s", stage_name, run_id, proc.pid, argv)
        return handle

    async def wait(self, handle: StageHandle) -> StageResult:
        assert handle.task is not None
        return await asyncio.shield(handle.task)

    async def cancel(self, handle: StageHandle) -> None:
        """Terminate a stage; a no-op when its process already exited."""
        if handle.done or handle.process.returncode is not None:
            return
        if handle.cancel_requested:
            return
        handle.cancel_requested = True
        logger.info("Cancelling stage %s of run %s (pid=%s)", handle.stage_name, handle.run_id, handle.pid)
        await self._terminate(handle)

    def get(self, run_id: str, stage_name: str) -> StageHandle | None:
        return self._handles.get((run_id, stage_name))

    def active(self, run_id: str | None = None) -> list[StageHandle]:
        return [h for (rid, _), h in self._handles.items() if run_id is None or rid == run_id]

    async def shutdown(self) -> None:
        handles = self.active()
        await asyncio.gather(*(self.cancel(h) for h in handles), return_exceptions=True)
        await asyncio.gather(*(self.wait(h) for h in handles), return_exceptions=True)

    # -------- internals --------

    def _signal(self, proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if self._use_group:
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    async def _terminate(self, handle: StageHandle) -> None:
        proc = handle.process
        if proc.returncode is not None:
            return
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._grace_period_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Stage %s of run %s ignored SIGTERM for %.1fs; killing",
                handle.stage_name,
                handle.run_id,
                self._grace_period_s,
            )
            self._signal(proc, _SIGKILL)
            await proc.wait()

    def _emit(self, handle: StageHandle, stream: str, text: str) -> None:
        progress = parse_progress(text) if stream == "stdout" else None
        if progress is not None:
            handle.progress = progress
        self._hub.publish(
            LogEvent(
                run_id=handle.run_id,
                stage_name=handle.stage_name,
                seq=self.next_seq(handle.run_id),
                stream=stream,
                text=text,
                ts=self._clock(),
                progress=progress,
            )
        )

    async def _pump(self, handle: StageHandle, reader: asyncio.StreamReader, stream: str) -> None:
        overlong = False  # inside a line past the limit; drop until its newline
        while True:
            eof = False
            try:
                raw = await reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                raw, eof = exc.partial, True
            except asyncio.LimitOverrunError as exc:
                await reader.readexactly(exc.consumed)
                handle.last_output = time.monotonic()
                if not overlong:
                    logger.warning(
                        "Stage %s of run %s wrote a line longer than %d bytes on %s; dropped",
                        handle.stage_name,
                        handle.run_id,
                        self._line_limit,
                        stream,
                    )
                overlong = True
                continue
            if raw:
                handle.last_output = time.monotonic()
                if overlong:
                    overlong = False
                else:
                    text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                    if text.strip():
                        self._emit(handle, stream, text)
            if eof:
                return

    async def _watch_idle(self, handle: StageHandle) -> None:
        assert self._idle_timeout_s is not None
        interval = min(1.0, self._idle_timeout_s / 4)
        while handle.process.returncode is None:
            await asyncio.sleep(interval)
            if time.monotonic() - handle.last_output >= self._idle_timeout_s:
                if handle.process.returncode is not None or handle.cancel_requested:
                    return
                handle.stalled = True
                logger.warning(
                    "Stage %s of run %s produced no output for %.0fs; treating as stalled",
                    handle.stage_name,
                    handle.run_id,
                    self._idle_timeout_s,
                )
                await self._terminate(handle)
                return

    async def _supervise(self, handle: StageHandle) -> StageResult:
        proc = handle.process
        assert proc.stdout is not None and proc.stderr is not None
        readers = [
            asyncio.create_task(self._pump(handle, proc.stdout, "stdout")),
            asyncio.create_task(self._pump(handle, proc.stderr, "stderr")),
        ]
        watchdog = asyncio.create_task(self._watch_idle(handle)) if self._idle_timeout_s else None

        try:
            exit_code = await proc.wait()
            # let the readers hit EOF; a grandchild may still hold the pipes open
            _, pending = await asyncio.wait(readers, timeout=self._grace_period_s)
            for t in pending:
                t.cancel()
        finally:
            if watchdog is not None and not watchdog.done():
                watchdog.cancel()
            for t in readers:
                if not t.done():
                    t.cancel()
            with suppress(asyncio.CancelledError):
                await asyncio.gather(*readers, return_exceptions=True)
            if watchdog is not None:
                with suppress(asyncio.CancelledError):
                    await asyncio.gather(watchdog, return_exceptions=True)

        if handle.cancel_requested:
            outcome, reason = StageOutcome.cancelled, FailureReason.cancelled
        elif handle.stalled:
            outcome, reason = StageOutcome.failure, FailureReason.stalled
        elif exit_code == 0:
            outcome, reason = StageOutcome.success, None
        else:
            outcome, reason = StageOutcome.failure, FailureReason.exit_code

        result = StageResult(
            stage_name=handle.stage_name,
            started_at=handle.started_at,
            ended_at=self._clock(),
            exit_code=exit_code,
            outcome=outcome,
            reason=reason,
            progress=handle.progress,
        )
        handle.result = result
        self._handles.pop((handle.run_id, handle.stage_name), None)
        logger.info(
            "Stage %s of run %s exited with code %s => %s",
            handle.stage_name,
            handle.run_id,
            exit_code,
            outcome.value,
        )
        return result
