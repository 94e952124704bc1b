import threading
from typing import Optional

import structlog

from content_pipeline.application.use_cases.pipeline_orchestrator import PipelineOrchestrator
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import TransientError

log = structlog.get_logger(__name__)


class StaleDocumentSweeper:
    """Periodically fails documents stuck in a non-terminal state."""

    def __init__(self, orchestrator: PipelineOrchestrator, interval_seconds: Optional[float] = None):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds or settings.SWEEP_INTERVAL_SECONDS
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.log = log.bind(component="StaleDocumentSweeper")

    def run_once(self) -> int:
        try:
            return len(self.orchestrator.sweep_stale_documents())
        except TransientError as e:
            self.log.warning("Stale sweep failed, retrying next interval", error=str(e))
            return 0

    def run(self) -> None:
        self.log.info("Stale document sweeper started", interval_s=self.interval_seconds)
        while not self._stopping.wait(self.interval_seconds):
            self.run_once()
        self.log.info("Stale document sweeper stopped")

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="stale-sweeper", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
