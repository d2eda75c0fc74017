"""
Direct transport: inject text into a terminal multiplexer pane through an
external helper (`snd --pane <session:window.pane> <text>`).

Each delivery is one helper process bounded by a timeout; a helper that
overruns is killed together with anything it spawned and reported as a
failed attempt.
"""
import asyncio
import logging
import os
import signal
from typing import Optional

from agentrelay.config import SND_PATH, DELIVERY_TIMEOUT
from agentrelay.transport.base import DeliveryTransport, DeliveryResult

logger = logging.getLogger(__name__)

_STDERR_LIMIT = 200

# Upper bound on reaping a killed helper
_REAP_TIMEOUT = 1.0


class DirectTransport(DeliveryTransport):
    name = "direct"

    def __init__(
        self,
        helper_path: str = SND_PATH,
        timeout: float = DELIVERY_TIMEOUT,
        session_pane: Optional[str] = None,
    ) -> None:
        self.helper_path = helper_path
        self.timeout = timeout
        # Pane of the agent session this process serves (stdio mode only)
        self.session_pane = session_pane or None

    def route_for(self, agent_id: str) -> Optional[str]:
        return self.session_pane

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        """SIGKILL the helper's process group, then reap it without waiting on stray children."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.kill()
        try:
            await asyncio.wait_for(proc.wait(), timeout=_REAP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"[direct] helper pid {proc.pid} not reaped after kill")

    async def deliver(self, target: str, text: str, envelope: Optional[dict] = None) -> DeliveryResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.helper_path, "--pane", target, text,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning(f"[direct] cannot spawn {self.helper_path}: {e}")
            return DeliveryResult.failure(target, f"spawn failed: {e}")

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.warning(f"[direct] delivery to {target} timed out after {self.timeout}s")
            return DeliveryResult.failure(target, f"timed out after {self.timeout}s")
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        if proc.returncode != 0:
            err = (stderr or b"").decode("utf-8", errors="replace").strip()[:_STDERR_LIMIT]
            reason = f"snd failed with code {proc.returncode}"
            if err:
                reason = f"{reason}: {err}"
            logger.warning(f"[direct] delivery to {target} failed: {reason}")
            return DeliveryResult.failure(target, reason)

        return DeliveryResult.success(target)
