"""
Telemetry - Batched, best-effort delivery of orchestration events.

Events are buffered by TelemetryEmitter and delivered to a sink when the
buffer reaches batch_size or flush_interval elapses. Failed deliveries
are retried with exponential backoff and then dropped with a log line;
nothing here ever raises into the orchestration it reports on.

SQLiteEventSink records events to SQLite for later inspection through
the CLI (`forecast-analyst events`).
"""

import asyncio
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class TelemetryEvent:
	"""A single orchestration event."""
	event_type: str
	run_id: str = ""
	session_id: str = ""
	phase: str = ""
	data: dict[str, Any] = field(default_factory=dict)
	timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class EventStats:
	"""Aggregate stats for an event type."""
	event_type: str
	count: int
	last_seen: str


class TelemetrySink(Protocol):
	"""Destination for event batches."""

	async def write_batch(self, events: list[TelemetryEvent]) -> None:
		...


class TelemetryEmitter:
	"""
	Buffers events and flushes them to a sink in batches.

	Usage:
		emitter = TelemetryEmitter(sink, batch_size=100, flush_interval=0.5)
		emitter.emit(TelemetryEvent("phase.completed", run_id=run_id))
		...
		await emitter.shutdown()
	"""

	def __init__(
		self,
		sink: TelemetrySink,
		batch_size: int = 100,
		flush_interval: float = 0.5,
		max_retries: int = 3,
		retry_delay: float = 0.1,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	):
		self.sink = sink
		self.batch_size = max(1, batch_size)
		self.flush_interval = flush_interval
		self.max_retries = max_retries
		self.retry_delay = retry_delay
		self._sleep = sleep
		self._buffer: list[TelemetryEvent] = []
		self._flush_lock = asyncio.Lock()
		self._timer: Optional[asyncio.Task] = None
		self._timer_flushing = False
		self._background: set[asyncio.Task] = set()
		self._closed = False
		self.delivered = 0
		self.dropped = 0

	@property
	def pending(self) -> int:
		return len(self._buffer)

	def emit(self, event: TelemetryEvent) -> None:
		"""Queue an event. Never blocks and never raises."""
		if self._closed:
			logger.debug(f"Telemetry emitter closed, dropping {event.event_type}")
			self.dropped += 1
			return
		self._buffer.append(event)
		try:
			asyncio.get_running_loop()
		except RuntimeError:
			# No running loop; the event stays buffered until the next flush
			return
		if len(self._buffer) >= self.batch_size:
			self._spawn(self.flush())
		elif self._timer is None or self._timer.done():
			self._timer = self._spawn(self._flush_later())

	def _spawn(self, coro) -> asyncio.Task:
		task = asyncio.get_running_loop().create_task(coro)
		self._background.add(task)
		task.add_done_callback(self._background.discard)
		return task

	async def _flush_later(self) -> None:
		await self._sleep(self.flush_interval)
		self._timer_flushing = True
		try:
			await self.flush()
		finally:
			self._timer_flushing = False

	async def flush(self) -> None:
		"""Deliver everything buffered so far."""
		async with self._flush_lock:
			while self._buffer:
				batch = self._buffer[:self.batch_size]
				del self._buffer[:self.batch_size]
				await self._deliver(batch)

	async def _deliver(self, batch: list[TelemetryEvent]) -> None:
		delay = self.retry_delay
		for attempt in range(1, self.max_retries + 1):
			try:
				await self.sink.write_batch(batch)
				self.delivered += len(batch)
				return
			except Exception as e:
				if attempt == self.max_retries:
					self.dropped += len(batch)
					logger.error(f"Telemetry flush failed after {attempt} attempts, dropped {len(batch)} events: {e}")
					return
				logger.warning(f"Telemetry flush attempt {attempt} failed: {e}")
				await self._sleep(delay)
				delay *= 2

	async def shutdown(self) -> None:
		"""Stop accepting events and flush what is pending, best-effort."""
		self._closed = True
		# A timer that has not reached its flush is cancelled, started or not; one that is mid-flush is awaited
		if self._timer is not None and not self._timer.done() and not self._timer_flushing:
			self._timer.cancel()
		pending = list(self._background)
		if pending:
			await asyncio.gather(*pending, return_exceptions=True)
		try:
			await self.flush()
		except Exception as e:
			logger.error(f"Telemetry shutdown flush failed: {e}")


class Observability:
	"""
	Session, event, log and metric hooks for the orchestrator.

	Every method is best-effort: failures are logged and swallowed.
	Without an emitter, only the Python logger is used.
	"""

	def __init__(self, emitter: Optional[TelemetryEmitter] = None, run_id: str = ""):
		self.emitter = emitter
		self.run_id = run_id

	def _emit(self, event: TelemetryEvent) -> None:
		if self.emitter is None:
			return
		if not event.run_id:
			event.run_id = self.run_id
		self.emitter.emit(event)

	def start_session(self, agent_name: str, correlation_id: str = "", metadata: Optional[dict[str, Any]] = None) -> str:
		session_id = f"{agent_name}_{uuid.uuid4().hex[:12]}"
		try:
			self._emit(TelemetryEvent(
				event_type="session.started",
				session_id=session_id,
				phase=agent_name,
				data={"correlation_id": correlation_id, **(metadata or {})},
			))
		except Exception as e:
			logger.warning(f"start_session telemetry failed: {e}")
		return session_id

	def end_session(self, session_id: str, result: dict[str, Any]) -> None:
		try:
			self._emit(TelemetryEvent(event_type="session.ended", session_id=session_id, data=result))
		except Exception as e:
			logger.warning(f"end_session telemetry failed: {e}")

	def record_event(self, event_type: str, phase: str = "", session_id: str = "", **data: Any) -> None:
		try:
			self._emit(TelemetryEvent(event_type=event_type, phase=phase, session_id=session_id, data=data))
		except Exception as e:
			logger.warning(f"record_event telemetry failed: {e}")

	def log(self, level: str, message: str, data: Optional[dict[str, Any]] = None) -> None:
		try:
			log_level = getattr(logging, level.upper(), logging.INFO)
			logger.log(log_level, message + (f" {json.dumps(data, default=str)}" if data else ""))
			self._emit(TelemetryEvent(event_type="log", data={"level": level, "message": message, **(data or {})}))
		except Exception as e:
			logger.warning(f"log telemetry failed: {e}")

	def metric(self, name: str, value: float, tags: Optional[dict[str, str]] = None) -> None:
		try:
			self._emit(TelemetryEvent(event_type="metric", data={"name": name, "value": value, "tags": tags or {}}))
		except Exception as e:
			logger.warning(f"metric telemetry failed: {e}")


class SQLiteEventSink:
	"""SQLite-backed storage for telemetry events."""

	def __init__(self, db_path: str):
		self.db_path = Path(db_path)
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._ensure_table()

	def _ensure_table(self) -> None:
		"""Create the events table if it doesn't exist."""
		with sqlite3.connect(str(self.db_path)) as conn:
			conn.execute("""
				CREATE TABLE IF NOT EXISTS events (
					id INTEGER PRIMARY KEY AUTOINCREMENT,
					event_type TEXT NOT NULL,
					run_id TEXT DEFAULT '',
					session_id TEXT DEFAULT '',
					phase TEXT DEFAULT '',
					data_json TEXT DEFAULT '{}',
					timestamp TEXT NOT NULL
				)
			""")
			conn.execute("""
				CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id)
			""")
			conn.execute("""
				CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type)
			""")

	def _connect(self) -> sqlite3.Connection:
		conn = sqlite3.connect(str(self.db_path))
		conn.row_factory = sqlite3.Row
		return conn

	async def write_batch(self, events: list[TelemetryEvent]) -> None:
		await asyncio.to_thread(self.record_many, events)

	def record_many(self, events: list[TelemetryEvent]) -> None:
		"""Insert event records."""
		with self._connect() as conn:
			conn.executemany(
				"""
				INSERT INTO events (event_type, run_id, session_id, phase, data_json, timestamp)
				VALUES (?, ?, ?, ?, ?, ?)
				""",
				[
					(e.event_type, e.run_id, e.session_id, e.phase, json.dumps(e.data, default=str), e.timestamp)
					for e in events
				],
			)

	def query(
		self,
		run_id: Optional[str] = None,
		event_type: Optional[str] = None,
		since: Optional[str] = None,
		limit: int = 100,
	) -> list[TelemetryEvent]:
		"""Query events with optional filters, newest first."""
		conditions: list[str] = []
		params: list[Any] = []

		if run_id:
			conditions.append("run_id = ?")
			params.append(run_id)
		if event_type:
			conditions.append("event_type = ?")
			params.append(event_type)
		if since:
			conditions.append("timestamp >= ?")
			params.append(since)

		where = " AND ".join(conditions) if conditions else "1=1"

		with self._connect() as conn:
			cursor = conn.execute(
				f"SELECT * FROM events WHERE {where} ORDER BY timestamp DESC, id DESC LIMIT ?",
				[*params, limit],
			)
			rows = cursor.fetchall()

		return [
			TelemetryEvent(
				event_type=row["event_type"],
				run_id=row["run_id"],
				session_id=row["session_id"],
				phase=row["phase"],
				data=json.loads(row["data_json"] or "{}"),
				timestamp=row["timestamp"],
			)
			for row in rows
		]

	def get_stats(self) -> list[EventStats]:
		"""Get counts per event type."""
		with self._connect() as conn:
			cursor = conn.execute("""
				SELECT event_type, COUNT(*) as count, MAX(timestamp) as last_seen
				FROM events
				GROUP BY event_type
				ORDER BY count DESC
			""")
			rows = cursor.fetchall()

		return [
			EventStats(event_type=row["event_type"], count=row["count"], last_seen=row["last_seen"])
			for row in rows
		]

	def clear(self, before: Optional[str] = None) -> int:
		"""Delete events, optionally only those before a timestamp. Returns count deleted."""
		with self._connect() as conn:
			if before:
				cursor = conn.execute("DELETE FROM events WHERE timestamp < ?", (before,))
			else:
				cursor = conn.execute("DELETE FROM events")
			return cursor.rowcount
