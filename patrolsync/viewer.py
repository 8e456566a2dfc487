import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

import structlog

from patrolsync.client import SyncApiClient
from patrolsync.errors import ShiftNotFoundError, SyncDeliveryError
from patrolsync.models import RemoteShift
from patrolsync.pair_code import normalize_pair_code

logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
UpdateFn = Callable[["ViewerState"], object]

POLL_INTERVAL = 10.0


class ViewerStatus(StrEnum):
    LOADING = "loading"
    LIVE = "live"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class ViewerState:
    status: ViewerStatus = ViewerStatus.LOADING
    shift: RemoteShift | None = None  # last good snapshot
    error: str | None = None


class LiveViewer:
    """
    Polls the sync API for one pair code. An unknown or expired code is
    reported as NOT_FOUND; a failed poll after a good one keeps the last
    snapshot around with status ERROR.
    """

    def __init__(
        self,
        client: SyncApiClient,
        pair_code: str,
        *,
        interval: float = POLL_INTERVAL,
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        self.client = client
        self.pair_code = normalize_pair_code(pair_code)
        self.interval = interval
        self.sleep_fn = sleep_fn
        self.state = ViewerState()

    async def refresh(self) -> ViewerState:
        try:
            shift = await self.client.fetch_shift(self.pair_code)
        except ShiftNotFoundError:
            self.state = ViewerState(status=ViewerStatus.NOT_FOUND)
        except SyncDeliveryError as exc:
            logger.info(
                "viewer.poll_failed", pair_code=self.pair_code, error=str(exc)
            )
            self.state = ViewerState(
                status=ViewerStatus.ERROR, shift=self.state.shift, error=str(exc)
            )
        else:
            self.state = ViewerState(status=ViewerStatus.LIVE, shift=shift)
        return self.state

    async def watch(
        self,
        on_update: UpdateFn | None = None,
        *,
        max_polls: int | None = None,
    ) -> ViewerState:
        """
        Poll until cancelled, until `max_polls` is reached, or until the
        shift is known to be over (not found, or ended).
        """
        polls = 0
        try:
            while True:
                state = await self.refresh()
                polls += 1
                if on_update is not None:
                    on_update(state)
                if state.status == ViewerStatus.NOT_FOUND:
                    break
                if state.shift is not None and not state.shift.is_active:
                    break
                if max_polls is not None and polls >= max_polls:
                    break
                await self.sleep_fn(self.interval)
        except asyncio.CancelledError:
            pass
        return self.state
