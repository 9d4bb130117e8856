"""
Run Event Stream - live progress of one discovery run for the dashboard.

Events, in order:
    init       the run as it is when the stream opens
    update     the run changed (its updated_at moved)
    heartbeat  nothing changed for RUN_STREAM_HEARTBEAT_SECONDS
    done       the run reached a terminal status; the stream ends

The stream polls the run row. The view encodes events as Server-Sent Events
frames with encode_sse(); closing the generator stops polling.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder

from ingestion.models import DiscoveryRun
from ingestion.services.discovery_runs import DiscoveryRunTracker

logger = logging.getLogger(__name__)

INIT = "init"
UPDATE = "update"
HEARTBEAT = "heartbeat"
DONE = "done"


@dataclass(frozen=True)
class RunEvent:
    event: str
    data: Dict[str, Any]


def run_snapshot(run: DiscoveryRun) -> Dict[str, Any]:
    """Fields of a run sent to stream subscribers."""
    return {
        "id": str(run.id),
        "kind": run.kind,
        "status": run.status,
        "stats": run.stats,
        "strategies_used": run.strategies_used,
        "errors": run.errors,
        "cancel_requested": run.cancel_requested_at is not None,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "updated_at": run.updated_at,
    }


def encode_sse(event: RunEvent) -> str:
    """Format an event as one SSE frame."""
    payload = json.dumps(event.data, cls=DjangoJSONEncoder)
    return f"event: {event.event}\ndata: {payload}\n\n"


class RunEventStream:
    """
    Iterable of RunEvents for one run.

    Args:
        run_id: Run to follow
        tracker: DiscoveryRunTracker used to read the run
        poll_interval: Seconds between reads
        heartbeat_interval: Seconds of silence before a heartbeat
        clock, sleep: Injected for tests
    """

    def __init__(
        self,
        run_id,
        tracker: Optional[DiscoveryRunTracker] = None,
        poll_interval: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.run_id = run_id
        self.tracker = tracker or DiscoveryRunTracker()
        self.poll_interval = poll_interval or getattr(settings, "RUN_STREAM_POLL_SECONDS", 1.0)
        self.heartbeat_interval = heartbeat_interval or getattr(settings, "RUN_STREAM_HEARTBEAT_SECONDS", 15)
        self.clock = clock
        self.sleep = sleep

    def __iter__(self) -> Iterator[RunEvent]:
        return self.events()

    def events(self) -> Iterator[RunEvent]:
        """
        Yield events until the run is terminal.

        Raises:
            NotFoundError: run does not exist when the stream opens
        """
        run = self.tracker.get_or_raise(self.run_id)
        yield RunEvent(INIT, run_snapshot(run))
        last_seen = run.updated_at
        last_sent = self.clock()

        while not run.is_terminal:
            self.sleep(self.poll_interval)
            current = self.tracker.get(self.run_id)
            if current is None:
                logger.warning(f"Run {self.run_id} disappeared while streaming")
                return
            run = current

            if run.updated_at != last_seen:
                last_seen = run.updated_at
                last_sent = self.clock()
                if not run.is_terminal:
                    yield RunEvent(UPDATE, run_snapshot(run))
            elif self.clock() - last_sent >= self.heartbeat_interval:
                last_sent = self.clock()
                yield RunEvent(HEARTBEAT, {"id": str(run.id), "status": run.status})

        yield RunEvent(DONE, run_snapshot(run))
