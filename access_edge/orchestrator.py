"""
Orchestrator.

Sequences capture -> gate -> detect -> embed -> match -> enqueue on the
capture thread and runs the sync, delivery and fallback tasks on their own
threads and schedules. The capture thread never touches the network; its
only storage interaction is DecisionQueue.enqueue().

Threads:
    capture    frames through the pipeline, matcher window expiry
    sync       cache delta pull with backoff, heartbeat
    delivery   outbox drain over the primary, retention purge
    fallback   outbox drain over the uplink during outages
"""

import logging
import sqlite3
import threading
import time
from typing import Callable, List, Optional

import requests

from .config import AgentConfig
from .credentials import CredentialManager
from .decision_queue import DecisionQueue, compute_backoff
from .embedding_cache import EmbeddingCache
from .errors import CacheSyncFailure, CredentialRevoked, InferenceError
from .fallback import FallbackTransport, Uplink, create_uplink
from .frame_source import Frame, FrameSource
from .health import HealthMonitor
from .inference import Detector, Embedder, InferenceBackend, create_backend
from .logging_config import DecisionLogger, build_status_fields
from .matcher import Matcher
from .quality_gate import QualityGate
from .schemas.decision_schemas import DecisionRecord
from .store import LocalStore
from .sync_client import OutageTracker, SyncClient, create_session

logger = logging.getLogger(__name__)

PURGE_INTERVAL_SECONDS = 3600.0


class Orchestrator:
    """
    Top-level agent loop.

    Usage:
        agent = create_orchestrator(config)
        agent.start()
        ...
        agent.stop()
    """

    def __init__(
        self,
        config: AgentConfig,
        store: LocalStore,
        cache: EmbeddingCache,
        queue: DecisionQueue,
        gate: QualityGate,
        detector: Detector,
        embedder: Embedder,
        matcher: Matcher,
        sync_client: Optional[SyncClient] = None,
        fallback: Optional[FallbackTransport] = None,
        frame_source: Optional[FrameSource] = None,
        health: Optional[HealthMonitor] = None,
        decision_logger: Optional[DecisionLogger] = None,
    ):
        self.config = config
        self.store = store
        self.cache = cache
        self.queue = queue
        self.gate = gate
        self.detector = detector
        self.embedder = embedder
        self.matcher = matcher
        self.sync_client = sync_client
        self.fallback = fallback
        self.frame_source = frame_source
        self.health = health or HealthMonitor()
        self.decision_logger = decision_logger or DecisionLogger(config.device_id)

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._running = False
        self._last_process_time = 0.0
        self._last_status_time = 0.0

    # =========================================================================
    # Pipeline
    # =========================================================================

    def process_frame(self, frame: Frame) -> List[DecisionRecord]:
        """
        Run one frame through gate, detection, embedding and matching.

        Only the highest-confidence face in the frame is matched.

        Returns:
            Decision records emitted by this frame (zero or one)
        """
        self.health.increment("frames_captured")

        result = self.gate.evaluate(frame.signals)
        if not result.accepted:
            self.health.increment("frames_rejected")
            if result.missing_signal:
                self.health.increment("quality_signal_missing")
                logger.debug(f"Frame {frame.frame_id} missing signal: {result.missing_signal}")
            return self._poll_matcher()
        self.health.increment("frames_accepted")

        try:
            regions = self.detector.detect(frame.image)
            if not regions:
                return self._poll_matcher()
            self.health.increment("faces_detected")
            probe = self.embedder.embed(frame.image, regions[0])
        except InferenceError as e:
            logger.warning(f"Frame {frame.frame_id} dropped: {e}")
            self.health.record_error("inference_errors", e)
            return self._poll_matcher()

        record = self.matcher.submit(probe, frame.captured_at, frame.captured_monotonic)
        if record is None:
            return []
        self._emit(record)
        return [record]

    def _poll_matcher(self) -> List[DecisionRecord]:
        record = self.matcher.poll()
        if record is None:
            return []
        self._emit(record)
        return [record]

    def _emit(self, record: DecisionRecord) -> None:
        self.decision_logger.log_created(record)
        self.health.increment(f"decisions_{record.decision.value}")
        try:
            self.queue.enqueue(record)
        except sqlite3.Error as e:
            logger.error(f"Failed to enqueue decision {record.event_id}: {e}")
            self.health.record_error("enqueue_failures", e)
            return
        self.decision_logger.log_enqueued(record.event_id)

    # =========================================================================
    # Scheduled tasks (one iteration each)
    # =========================================================================

    def sync_once(self, full: bool = False) -> bool:
        """One cache sync. Returns True on success."""
        if self.sync_client is None:
            return False
        try:
            self.sync_client.sync_cache(self.cache, full=full)
            return True
        except CacheSyncFailure as e:
            logger.warning(f"Cache sync failed, keeping snapshot v{self.cache.snapshot.version}: {e}")
            return False

    def deliver_once(self) -> int:
        """Drain due entries over the primary until a round comes back short."""
        if self.sync_client is None:
            return 0
        total = 0
        batch_size = self.config.sync.delivery_batch_size
        while not self._stop_event.is_set():
            acknowledged = self.sync_client.deliver_pending(self.queue, batch_size)
            total += acknowledged
            if acknowledged < batch_size:
                break
        self.health.set_gauge("queue_depth", self.queue.depth())
        return total

    def fallback_once(self) -> int:
        if self.fallback is None:
            return 0
        return self.fallback.run_once()

    def log_status(self) -> None:
        age = time.time() - self.cache.as_of.timestamp()
        self.health.set_gauge("cache_snapshot_age_seconds", round(age, 1))
        fields = build_status_fields(self.health.snapshot())
        logger.info(
            f"[STATUS] frames={fields.get('frames_captured', 0)} "
            f"accepted={fields.get('frames_accepted', 0)} "
            f"decisions={fields.get('decisions_allow', 0)}/"
            f"{fields.get('decisions_deny', 0)}/{fields.get('decisions_review', 0)} "
            f"queue={fields.get('queue_depth', 0)} "
            f"identities={fields.get('cache_identities', 0)}",
            extra={"status": fields},
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start all task threads."""
        if self._running:
            return
        self._stop_event.clear()
        self._running = True
        self.health.set_gauge("queue_depth", self.queue.depth())

        tasks = []
        if self.frame_source is not None:
            tasks.append(("Capture", self._capture_loop))
        if self.sync_client is not None:
            tasks.append(("Sync", self._sync_loop))
            tasks.append(("Delivery", self._delivery_loop))
        if self.fallback is not None:
            tasks.append(("Fallback", self._fallback_loop))

        for name, target in tasks:
            thread = threading.Thread(target=target, daemon=True, name=f"Agent-{name}")
            thread.start()
            self._threads.append(thread)

        logger.info(f"Agent started: device_id={self.config.device_id}, "
                    f"location_id={self.config.location_id}")

    def wait(self) -> None:
        """Block until stop() or request_stop() is called."""
        while not self._stop_event.wait(1.0):
            pass

    def request_stop(self) -> None:
        """Signal all tasks to stop; safe to call from a signal handler."""
        self._stop_event.set()

    def run_once(self) -> List[DecisionRecord]:
        """
        Process one frame, then run one sync and one delivery round.

        For install checks; no threads are started.
        """
        records: List[DecisionRecord] = []
        if self.frame_source is not None and self.frame_source.open():
            frame = self.frame_source.read()
            if frame is not None:
                records = self.process_frame(frame)
            else:
                logger.warning("Camera opened but returned no frame")
        try:
            self.sync_once()
            self.deliver_once()
        except CredentialRevoked as e:
            self._on_revoked(e)
        self.close()
        self.log_status()
        return records

    def stop(self, grace_seconds: float = 5.0) -> None:
        """
        Stop all tasks.

        Capture stops taking frames at once; an attempt in progress is
        discarded. Network tasks finish their current call, bounded by
        their timeouts, and are joined for up to grace_seconds each.
        """
        if not self._running:
            return
        logger.info("Stopping agent...")
        self._stop_event.set()
        self._running = False

        for thread in self._threads:
            thread.join(timeout=grace_seconds)
            if thread.is_alive():
                logger.warning(f"{thread.name} did not stop within {grace_seconds}s")
        self._threads = []

        self.close()
        self.log_status()
        logger.info("Agent stopped")

    def close(self) -> None:
        self.detector.close()
        self.embedder.close()
        if self.frame_source is not None:
            self.frame_source.release()
        if self.sync_client is not None:
            self.sync_client.close()
        if self.fallback is not None:
            self.fallback.uplink.close()

    # =========================================================================
    # Task loops
    # =========================================================================

    def _capture_loop(self) -> None:
        source = self.frame_source
        frame_time = 1.0 / self.config.camera.fps
        process_interval = 1.0 / self.config.camera.process_fps
        status_interval = self.config.logging.status_interval_seconds

        if not source.open():
            self._stop_event.wait(self.config.camera.reconnect_delay_seconds)

        while not self._stop_event.is_set():
            loop_start = time.time()

            frame = source.read()
            if frame is None:
                self._poll_matcher()
                if self._stop_event.wait(self.config.camera.reconnect_delay_seconds):
                    break
                source.reconnect()
                continue

            try:
                if loop_start - self._last_process_time >= process_interval:
                    self._last_process_time = loop_start
                    self.process_frame(frame)
                else:
                    self._poll_matcher()
            except Exception as e:
                logger.error(f"Capture loop error: {e}", exc_info=True)
                self.health.record_error("capture_loop_errors", e)

            if loop_start - self._last_status_time >= status_interval:
                self._last_status_time = loop_start
                self.log_status()

            elapsed = time.time() - loop_start
            if elapsed < frame_time:
                self._stop_event.wait(frame_time - elapsed)

        self.matcher.reset()

    def _sync_loop(self) -> None:
        cfg = self.config.sync
        failures = 0
        next_heartbeat = 0.0

        while not self._stop_event.is_set():
            delay = cfg.sync_interval_seconds
            try:
                if self.sync_once():
                    failures = 0
                else:
                    failures += 1
                    delay = min(cfg.sync_interval_seconds,
                                compute_backoff(failures, base=self.config.queue.backoff_base_seconds,
                                                maximum=cfg.sync_interval_seconds,
                                                jitter=self.config.queue.backoff_jitter))

                if time.time() >= next_heartbeat:
                    next_heartbeat = time.time() + cfg.heartbeat_interval_seconds
                    self.sync_client.send_heartbeat(self.health.snapshot())
            except CredentialRevoked as e:
                self._on_revoked(e)
            except Exception as e:
                logger.error(f"Sync task error: {e}", exc_info=True)
                self.health.record_error("sync_task_errors", e)

            self._stop_event.wait(delay)

    def _delivery_loop(self) -> None:
        next_purge = 0.0
        while not self._stop_event.is_set():
            try:
                self.deliver_once()
                if time.time() >= next_purge:
                    next_purge = time.time() + PURGE_INTERVAL_SECONDS
                    self.queue.purge()
            except CredentialRevoked as e:
                self._on_revoked(e)
            except Exception as e:
                logger.error(f"Delivery task error: {e}", exc_info=True)
                self.health.record_error("delivery_task_errors", e)

            self._stop_event.wait(self.config.sync.delivery_interval_seconds)

    def _fallback_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.fallback_once()
            except Exception as e:
                logger.error(f"Fallback task error: {e}", exc_info=True)
                self.health.record_error("fallback_task_errors", e)

            self._stop_event.wait(self.config.fallback.interval_seconds)

    def reprovision(self) -> None:
        """Resume network tasks after the device secret was replaced."""
        if self.sync_client is not None:
            self.sync_client.credentials.reset_provisioning()
        self.health.set_gauge("needs_provisioning", False)

    def _on_revoked(self, error: CredentialRevoked) -> None:
        # Logged once by the credential manager; keep counting here.
        self.health.increment("credential_revoked")
        self.health.set_gauge("needs_provisioning", True)
        logger.debug(f"Network task idle until re-provisioned: {error}")


def create_orchestrator(
    config: AgentConfig,
    backend: Optional[InferenceBackend] = None,
    session: Optional[requests.Session] = None,
    uplink: Optional[Uplink] = None,
    frame_source: Optional[FrameSource] = None,
    on_revoked: Optional[Callable[[str], None]] = None,
) -> Orchestrator:
    """
    Wire every component from configuration.

    Raises:
        StorageInitError: If the local store cannot be opened
    """
    health = HealthMonitor()
    decision_logger = DecisionLogger(config.device_id)

    store = LocalStore(config.queue.db_path, busy_timeout=config.queue.write_timeout_seconds)
    store.initialize()

    cache = EmbeddingCache(
        store,
        config.location_id,
        references_per_identity=config.cache.references_per_identity,
        model_dimensions=config.cache.model_dimensions,
        health=health,
    )
    cache.load()

    queue = DecisionQueue(
        store,
        config.queue,
        health=health,
        fallback_retry_multiplier=config.fallback.primary_retry_multiplier,
    )

    session = session or create_session(config.sync, config.device_id)
    credentials = CredentialManager(
        session,
        config.sync.auth_url,
        config.device_id,
        secret_path=config.sync.device_secret_path,
        timeout=config.sync.timeout_seconds,
        refresh_margin=config.sync.credential_refresh_margin_seconds,
        verify_ssl=config.sync.verify_ssl,
        on_revoked=on_revoked,
    )
    outage = OutageTracker()
    sync_client = SyncClient(
        config.sync,
        config.device_id,
        config.location_id,
        credentials,
        session=session,
        health=health,
        outage=outage,
        decision_logger=decision_logger,
    )
    fallback = FallbackTransport(
        config.fallback,
        queue,
        outage,
        uplink or create_uplink(config.fallback.uplink),
        config.device_id,
        health=health,
        decision_logger=decision_logger,
    )

    backend = backend or create_backend(config.inference)
    detector = Detector(backend, config.inference)
    embedder = Embedder(backend, config.inference)
    matcher = Matcher(
        config.matcher,
        cache,
        model_version=embedder.model_version,
        device_id=config.device_id,
        location_id=config.location_id,
    )

    return Orchestrator(
        config=config,
        store=store,
        cache=cache,
        queue=queue,
        gate=QualityGate(config.quality),
        detector=detector,
        embedder=embedder,
        matcher=matcher,
        sync_client=sync_client,
        fallback=fallback,
        frame_source=frame_source or FrameSource(config.camera),
        health=health,
        decision_logger=decision_logger,
    )
