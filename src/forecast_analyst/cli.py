"""CLI for forecast-analyst: run, work, workspace, events and config commands."""

import argparse
import asyncio
import json
import re
import sys
from datetime import datetime, timedelta
from typing import Optional, Union

from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from .config import Config, load_config
from .errors import AnalystError
from .executor import ClaudeCLIExecutor, RetryingExecutor
from .logging_config import setup_logging
from .orchestrator.analyst import AnalystOrchestrator, RunResult
from .orchestrator.phases import ForecastRequest, MarketData
from .store import FileStore, SQLiteStore, Store
from .telemetry import SQLiteEventSink, TelemetryEmitter
from .workspace.tracker import WorkspaceTracker
from .workspace.worker import DEPTHS, LoopResult, WorkerResult, WorkspaceWorker, initialize_workspace


_SINCE_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


def _parse_since(since_str: str) -> str:
	"""Turn '30m', '24h' or '7d' into the ISO timestamp that long ago."""
	match = re.fullmatch(r"(\d+)([mhd])", since_str.strip())
	if not match:
		print(f"Invalid --since value: {since_str!r} (expected e.g. 30m, 24h, 7d)")
		sys.exit(1)
	delta = timedelta(**{_SINCE_UNITS[match.group(2)]: int(match.group(1))})
	return (datetime.now() - delta).isoformat()


def _confidence_style(confidence: str) -> str:
	return {"high": "green", "medium": "yellow"}.get(confidence, "red")


def render_run_result(result: RunResult, console: Optional[Console] = None) -> None:
	"""Render a finished run: the forecast panel, phase costs and evidence counts."""
	console = console or Console()
	forecast = result.forecast
	style = _confidence_style(forecast.confidence.value)

	body = [
		f"[bold]{forecast.outcome}[/bold]: [bold cyan]{forecast.probability:.1%}[/bold cyan] "
		f"([dim]{forecast.lower_bound:.1%} - {forecast.upper_bound:.1%}[/dim])",
		f"Confidence: [{style}]{forecast.confidence.value}[/{style}]",
	]
	if forecast.reasoning:
		body.extend(["", forecast.reasoning])
	if forecast.assumptions:
		body.extend(["", "[bold]Assumptions[/bold]"])
		body.extend(f"- {a}" for a in forecast.assumptions)
	console.print(Panel("\n".join(body), title=result.question, subtitle=result.target_id))

	table = Table(title="Phases")
	table.add_column("Phase", style="cyan")
	table.add_column("Iteration", justify="right")
	table.add_column("Cost", justify="right")
	table.add_column("Duration", justify="right")
	table.add_column("Status", justify="center")
	for phase in result.metadata.phases:
		status = "[green]ok[/green]" if phase.success else "[red]failed[/red]"
		table.add_row(
			phase.name,
			str(phase.iteration),
			f"${phase.cost_usd:.4f}",
			f"{phase.duration_ms / 1000:.1f}s",
			status,
		)
	console.print(table)

	evidence = result.aggregated_evidence
	counts = evidence.counts_by_status()
	console.print(
		f"Evidence: {len(evidence.findings)} findings "
		f"({counts['supported']} supported, {counts['contested']} contested, {counts['unclear']} unclear), "
		f"{len(evidence.sources)} sources from {len(result.questions_asked)} questions"
	)
	console.print(
		f"Total cost: [bold]${result.metadata.cost_usd:.4f}[/bold] over "
		f"{result.metadata.research_iterations} research iteration(s)"
	)


def cmd_run(args: argparse.Namespace) -> None:
	"""Run a forecast end to end."""
	config = _load_config_or_exit()
	if args.budget is not None:
		config.budget_total_usd = args.budget
	if args.max_iterations is not None:
		config.max_iterations = args.max_iterations
	try:
		config.validate()
	except AnalystError as e:
		print(f"Invalid configuration: {e.message}")
		sys.exit(1)

	request = ForecastRequest(
		question=args.question,
		target_id=args.target_id,
		resolution_date=args.resolution_date,
		market_data=MarketData(yes_price=args.market_price, source="cli") if args.market_price is not None else None,
		filter_profile=args.filter_profile,
	)

	try:
		result = asyncio.run(_run(config, request))
	except AnalystError as e:
		Console(stderr=True).print(f"[red]Run failed[/red] [{e.code}]: {e.message}")
		sys.exit(1)
	except KeyboardInterrupt:
		Console(stderr=True).print("[yellow]Run cancelled[/yellow]")
		sys.exit(130)

	if args.json:
		print(result.model_dump_json(indent=2))
	else:
		render_run_result(result)


def _executor(config: Config) -> RetryingExecutor:
	return RetryingExecutor(
		ClaudeCLIExecutor(command=config.executor_command),
		max_attempts=config.executor_max_attempts,
		backoff_seconds=config.executor_backoff_seconds,
	)


def _emitter(config: Config) -> TelemetryEmitter:
	return TelemetryEmitter(
		SQLiteEventSink(str(config.events_db_path)),
		batch_size=config.telemetry_batch_size,
		flush_interval=config.telemetry_flush_interval,
		max_retries=config.telemetry_max_retries,
		retry_delay=config.telemetry_retry_delay,
	)


def _open_store(config: Config) -> Store:
	"""Document store selected by config.store_backend."""
	if config.store_backend == "file":
		return FileStore(config.workspace_dir)
	return SQLiteStore(str(config.store_db_path))


async def _close_store(store: Store) -> None:
	if isinstance(store, SQLiteStore):
		await store.close()


def _tracker(config: Config, store: Store) -> WorkspaceTracker:
	return WorkspaceTracker(
		store,
		max_attempts=config.max_feature_attempts,
		confirm_threshold=config.hypothesis_confirm_threshold,
		reject_threshold=config.hypothesis_reject_threshold,
	)


async def _run(config: Config, request: ForecastRequest) -> RunResult:
	store = _open_store(config)
	emitter = _emitter(config)
	orchestrator = AnalystOrchestrator(
		_executor(config), config, store=store, workspace=_tracker(config, store), emitter=emitter,
	)
	try:
		return await orchestrator.run(request)
	finally:
		await emitter.shutdown()
		await _close_store(store)


def cmd_workspace(args: argparse.Namespace) -> None:
	"""Show the workspace summary for a target."""
	config = _load_config_or_exit()
	summary = asyncio.run(_workspace_summary(config, args.target_id))
	Console().print(Markdown(summary))


async def _workspace_summary(config: Config, target_id: str) -> str:
	store = _open_store(config)
	try:
		return await _tracker(config, store).get_summary(target_id)
	finally:
		await _close_store(store)


def render_worker_results(results: list[WorkerResult], footer: str, console: Optional[Console] = None) -> None:
	"""Render one row per feature worked on, then a summary line."""
	console = console or Console()
	table = Table(title="Features")
	table.add_column("Feature", style="cyan")
	table.add_column("Status", justify="center")
	table.add_column("Claims", justify="right")
	table.add_column("Hypotheses", justify="right")
	table.add_column("Cost", justify="right")
	table.add_column("Error")
	for r in results:
		status = r.feature_status.value if r.feature_status else "-"
		style = "green" if r.success else "red"
		table.add_row(
			r.feature_name or r.feature_id or "-",
			f"[{style}]{status}[/{style}]",
			str(r.claims_added),
			f"+{r.hypotheses_added} / ~{r.hypotheses_updated}",
			f"${r.cost_usd:.4f}",
			(r.error or "")[:60],
		)
	if results:
		console.print(table)
	console.print(footer)


def cmd_work(args: argparse.Namespace) -> None:
	"""Work through a target's workspace features."""
	config = _load_config_or_exit()
	try:
		outcome = asyncio.run(_work(config, args))
	except AnalystError as e:
		Console(stderr=True).print(f"[red]Work failed[/red] [{e.code}]: {e.message}")
		sys.exit(1)
	except KeyboardInterrupt:
		Console(stderr=True).print("[yellow]Work cancelled[/yellow]")
		sys.exit(130)

	if args.json:
		print(outcome.model_dump_json(indent=2))
	elif isinstance(outcome, LoopResult):
		render_worker_results(
			outcome.results,
			f"Stopped ({outcome.stop_reason}) after {outcome.iterations} feature(s), "
			f"${outcome.total_cost_usd:.4f}, {outcome.final_progress:.0%} complete",
		)
	else:
		render_worker_results([outcome] if outcome.feature_id else [], f"{outcome.progress:.0%} complete")


async def _work(config: Config, args: argparse.Namespace) -> Union[LoopResult, WorkerResult]:
	store = _open_store(config)
	emitter = _emitter(config)
	tracker = _tracker(config, store)
	worker = WorkspaceWorker(
		_executor(config), tracker, emitter=emitter, timeout_seconds=config.executor_timeout_seconds,
	)
	try:
		if args.subject:
			await initialize_workspace(tracker, args.target_id, args.subject, depth=args.depth, focus=args.focus)
		if args.feature_id:
			return await worker.run_once(args.target_id, feature_id=args.feature_id, max_cost_usd=args.feature_budget)
		return await worker.run_loop(
			args.target_id,
			max_iterations=args.max_iterations,
			max_total_cost_usd=args.budget,
			per_feature_cost_usd=args.feature_budget,
			max_duration_seconds=args.max_duration,
		)
	finally:
		await emitter.shutdown()
		await _close_store(store)


def cmd_events(args: argparse.Namespace) -> None:
	"""Show recorded telemetry events or per-type stats."""
	config = _load_config_or_exit()
	sink = SQLiteEventSink(str(config.events_db_path))
	console = Console()

	if args.stats:
		stats = sink.get_stats()
		if not stats:
			console.print("[dim]No events recorded yet.[/dim]")
			return
		table = Table(title="Event Statistics")
		table.add_column("Event", style="cyan")
		table.add_column("Count", justify="right")
		table.add_column("Last Seen")
		for s in stats:
			table.add_row(s.event_type, str(s.count), s.last_seen)
		console.print(table)
		return

	since = _parse_since(args.since) if args.since else None
	events = sink.query(run_id=args.run_id, event_type=args.type, since=since, limit=args.limit)
	if not events:
		console.print("[dim]No events recorded yet.[/dim]")
		return

	table = Table(title=f"Events (last {len(events)})")
	table.add_column("Time")
	table.add_column("Event", style="cyan")
	table.add_column("Run")
	table.add_column("Phase")
	table.add_column("Data")
	for e in events:
		data = json.dumps(e.data, default=str)
		table.add_row(
			e.timestamp[:19],
			e.event_type,
			e.run_id,
			e.phase,
			data if len(data) <= 80 else data[:77] + "...",
		)
	console.print(table)


def cmd_config(args: argparse.Namespace) -> None:
	"""Print the effective configuration."""
	config = _load_config_or_exit()
	table = Table(title="Configuration")
	table.add_column("Setting", style="cyan")
	table.add_column("Value")
	for key, value in config.to_dict().items():
		table.add_row(key, str(value))
	Console().print(table)


def _load_config_or_exit() -> Config:
	try:
		config = load_config()
	except AnalystError as e:
		print(f"Invalid configuration: {e.message}")
		sys.exit(1)
	setup_logging(log_dir=config.log_dir)
	return config


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="forecast-analyst",
		description="Decompose, research, analyze and forecast probabilistic questions",
	)
	subparsers = parser.add_subparsers(dest="command")

	# run
	run_parser = subparsers.add_parser("run", help="Run a forecast")
	run_parser.add_argument("question", help="The forecasting question")
	run_parser.add_argument("--target-id", default=None, help="Stable id for persisted artifacts")
	run_parser.add_argument("--budget", type=float, default=None, help="Total budget in USD")
	run_parser.add_argument("--max-iterations", type=int, default=None, help="Maximum research iterations")
	run_parser.add_argument("--market-price", type=float, default=None, help="Current market Yes price (0-1)")
	run_parser.add_argument("--resolution-date", default=None, help="Resolution date (YYYY-MM-DD)")
	run_parser.add_argument(
		"--filter-profile",
		choices=["strict", "default", "loose"],
		default=None,
		help="Evidence filter limits",
	)
	run_parser.add_argument("--json", action="store_true", help="Print the full run result as JSON")
	run_parser.set_defaults(func=cmd_run)

	# work
	work_parser = subparsers.add_parser("work", help="Research a target's workspace feature by feature")
	work_parser.add_argument("target_id", help="Target id")
	work_parser.add_argument("--subject", default=None, help="Create the workspace for this subject if it does not exist")
	work_parser.add_argument("--depth", choices=list(DEPTHS), default="standard", help="Feature set for a new workspace")
	work_parser.add_argument(
		"--focus",
		nargs="+",
		choices=["facts", "timeline", "risks", "opportunities", "prediction"],
		default=None,
		help="Limit the optional features of a new workspace",
	)
	work_parser.add_argument("--feature-id", default=None, help="Work on this feature only")
	work_parser.add_argument("--max-iterations", type=int, default=10, help="Maximum features to work on")
	work_parser.add_argument("--budget", type=float, default=5.0, help="Total budget in USD")
	work_parser.add_argument("--feature-budget", type=float, default=0.5, help="Cost ceiling per feature in USD")
	work_parser.add_argument("--max-duration", type=float, default=None, help="Stop starting features after this many seconds")
	work_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
	work_parser.set_defaults(func=cmd_work)

	# workspace
	ws_parser = subparsers.add_parser("workspace", help="Show a target's workspace summary")
	ws_parser.add_argument("target_id", help="Target id")
	ws_parser.set_defaults(func=cmd_workspace)

	# events
	events_parser = subparsers.add_parser("events", help="Show telemetry events")
	events_parser.add_argument("--run-id", default=None, help="Only events for this run")
	events_parser.add_argument("--type", default=None, help="Only events of this type")
	events_parser.add_argument("--since", default=None, help="Filter by time (e.g. 1h, 24h, 7d)")
	events_parser.add_argument("--limit", type=int, default=50, help="Max results")
	events_parser.add_argument("--stats", action="store_true", help="Show counts per event type")
	events_parser.set_defaults(func=cmd_events)

	# config
	config_parser = subparsers.add_parser("config", help="Show effective configuration")
	config_parser.set_defaults(func=cmd_config)

	return parser


def main() -> None:
	"""CLI entry point."""
	load_dotenv()
	parser = build_parser()
	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	args.func(args)
