"""GapFill CLI entrypoint."""

import asyncio
import json
import sys
from pathlib import Path

import click
import yaml

from .agents.openai_provider import OpenAIGenerator, OpenAISimilarity
from .config.loader import ConfigError, create_default_config, load_config_or_default
from .config.models import GapFillConfig
from .detection.detector import detect_graph_gaps
from .graph.io import PlanDocument, PlanFileError, load_plan, plan_key, save_plan
from .graph.store import SessionConflictError
from .insertion.validator import DecisionValidationError
from .observability.report import SessionReport, format_gaps
from .pipeline.candidates import CandidatePipeline
from .review.service import GapAnalysisService
from .review.session import SessionStateError
from .state.persistence import list_sessions, load_session, session_path
from .utils.logging import get_logger, setup_logging, setup_logging_from_config

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
}

logger = get_logger(__name__)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--config",
    "-c",
    default=".gapfill/config.yml",
    help="Path to configuration file",
    type=click.Path(exists=False, path_type=Path),
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.pass_context
def cli(ctx: click.Context, config: Path, verbose: bool) -> None:
    """GapFill - find missing tasks in a plan and insert them under review."""
    log_level = "DEBUG" if verbose else "WARNING"
    setup_logging(level=log_level, use_colors=verbose)

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose


def _load_config(ctx: click.Context) -> GapFillConfig:
    config_path: Path = ctx.obj["config_path"]
    verbose: bool = ctx.obj["verbose"]
    try:
        config = load_config_or_default(config_path)
    except ConfigError as e:
        click.echo(f"✗ Configuration error: {e}", err=True)
        sys.exit(1)

    setup_logging_from_config(config.logging, verbose=verbose)
    return config


def _load_plan(plan_path: Path) -> PlanDocument:
    try:
        return load_plan(plan_path)
    except PlanFileError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


def _load_history(history_file: Path | None) -> list[str]:
    if history_file is None or not history_file.exists():
        return []
    with open(history_file, "r") as f:
        return [line.strip() for line in f if line.strip()]


def _build_service(config: GapFillConfig) -> GapAnalysisService:
    if config.generator.mode != "openai_api":
        click.echo(f"✗ Unsupported generator mode: {config.generator.mode}", err=True)
        sys.exit(1)
    if config.similarity.mode != "openai_api":
        click.echo(f"✗ Unsupported similarity mode: {config.similarity.mode}", err=True)
        sys.exit(1)

    generator = OpenAIGenerator(config.generator.model_dump())
    similarity = OpenAISimilarity(
        config.similarity.model_dump(),
        corpus=_load_history(config.similarity.history_file),
    )
    pipeline = CandidatePipeline(generator, similarity, config.pipeline)
    return GapAnalysisService(pipeline, config=config, state_dir=config.storage.state_dir)


def _open_session_plan(service: GapAnalysisService, session_id: str) -> tuple[PlanDocument, Path]:
    """Register the plan a persisted session was analysed against."""
    record = service.get_session(session_id)
    if record is None:
        click.echo(f"✗ Unknown session: {session_id}", err=True)
        sys.exit(1)
    if not record.plan_path:
        click.echo(f"✗ Session {session_id} has no plan file", err=True)
        sys.exit(1)

    plan_path = Path(record.plan_path)
    document = _load_plan(plan_path)
    service.register_plan(document.graph, plan_id=record.plan_id, version=document.version)
    return document, plan_path


@cli.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration",
)
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Initialize GapFill configuration."""
    config_path: Path = ctx.obj["config_path"]

    if config_path.exists() and not force:
        click.echo(f"Configuration already exists: {config_path}")
        click.echo("Use --force to overwrite")
        sys.exit(1)

    try:
        create_default_config(config_path)
    except OSError as e:
        click.echo(f"✗ Failed to create configuration: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Created configuration: {config_path}")
    click.echo("\nNext steps:")
    click.echo(f"  1. Review and customize {config_path}")
    click.echo("  2. Export OPENAI_API_KEY and OPENAI_MODEL")
    click.echo("  3. Run: gapfill analyze plan.yml")


@cli.command()
@click.argument("plan", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print gaps as JSON")
@click.pass_context
def detect(ctx: click.Context, plan: Path, as_json: bool) -> None:
    """Detect gaps in PLAN without generating candidates."""
    config = _load_config(ctx)
    document = _load_plan(plan)

    gaps = detect_graph_gaps(document.graph, config.detection)
    if as_json:
        click.echo(json.dumps([gap.model_dump(mode="json") for gap in gaps], indent=2))
    else:
        click.echo(format_gaps(gaps))


@cli.command()
@click.argument("plan", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--outcome", "-o", help="Desired outcome of the plan")
@click.option(
    "--example",
    "-e",
    "examples",
    multiple=True,
    help="Example task used to anchor granularity (up to 2)",
)
@click.pass_context
def analyze(ctx: click.Context, plan: Path, outcome: str | None, examples: tuple[str, ...]) -> None:
    """Find missing tasks in PLAN and open a review session."""
    config = _load_config(ctx)
    document = _load_plan(plan)
    service = _build_service(config)
    plan_id = plan_key(plan)
    service.register_plan(document.graph, plan_id=plan_id, version=document.version)

    try:
        result = asyncio.run(
            service.start_gap_analysis(
                plan_id=plan_id,
                outcome_text=outcome or document.outcome,
                document_context=document.document_context,
                manual_examples=list(examples[:2]),
                plan_path=plan.resolve(),
            )
        )
    except SessionConflictError as e:
        click.echo(f"✗ {e}", err=True)
        click.echo(f"  Commit or abort session {e.holder} first", err=True)
        sys.exit(1)

    session_id = result["session_id"]
    record = service.get_session(session_id)
    report = SessionReport(record)
    click.echo(report.render())
    report.write(config.storage.state_dir / f"{session_id}.md")

    if result["gaps"]:
        click.echo(f"\nDecide with: gapfill commit {session_id} --decisions decisions.yml")


@cli.command()
@click.argument("session_id")
@click.option(
    "--decisions",
    "-d",
    "decisions_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML or JSON list of {candidate_id, action, edited_text?, edited_hours?}",
)
@click.pass_context
def commit(ctx: click.Context, session_id: str, decisions_file: Path) -> None:
    """Commit review decisions for SESSION_ID into its plan file."""
    config = _load_config(ctx)
    service = _build_service(config)
    document, plan_path = _open_session_plan(service, session_id)

    try:
        with open(decisions_file, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        click.echo(f"✗ Invalid decisions file: {e}", err=True)
        sys.exit(1)
    if isinstance(data, dict):
        data = data.get("decisions")

    result = service.commit_session(session_id, data if data is not None else [])
    if result["status"] != "committed":
        error = result["error"]
        click.echo(f"✗ Commit failed ({error['type']}): {error['message']}", err=True)
        for detail in error.get("errors", [])[1:]:
            click.echo(f"  {detail}", err=True)
        sys.exit(1)

    record = service.get_session(session_id)
    store = service.get_store(record.plan_id)
    document.graph = store.graph
    document.version = store.version
    save_plan(document, plan_path)

    inserted = ", ".join(f"#{task_id}" for task_id in result["inserted_task_ids"]) or "none"
    click.echo(f"✓ Committed session {session_id}: inserted {inserted}")
    click.echo(f"  Plan saved: {plan_path} (v{document.version})")


@cli.command()
@click.argument("session_id")
@click.argument("gap_id")
@click.pass_context
def retry(ctx: click.Context, session_id: str, gap_id: str) -> None:
    """Retry candidate generation for a failed GAP_ID."""
    config = _load_config(ctx)
    service = _build_service(config)
    _open_session_plan(service, session_id)

    try:
        result = asyncio.run(service.retry_gap(session_id, gap_id))
    except (DecisionValidationError, SessionStateError, SessionConflictError) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if result["status"] == "generation_failed":
        click.echo(f"✗ {gap_id} failed again: {result['error']['message']}", err=True)
        sys.exit(1)
    click.echo(f"✓ {gap_id}: {len(result['candidates'])} candidates")
    click.echo(SessionReport(service.get_session(session_id)).render())


@cli.command()
@click.argument("session_id", required=False)
@click.pass_context
def status(ctx: click.Context, session_id: str | None) -> None:
    """Show a review session, or list sessions."""
    config = _load_config(ctx)
    state_dir = config.storage.state_dir

    if session_id is None:
        records = list_sessions(state_dir)
        if not records:
            click.echo("No review sessions")
            return
        for record in records:
            click.echo(
                f"{record.session_id}  {record.state.value:<16} "
                f"{len(record.gaps)} gaps  {record.plan_path or record.plan_id}"
            )
        return

    record = load_session(session_path(state_dir, session_id))
    if record is None:
        click.echo(f"✗ Unknown session: {session_id}", err=True)
        sys.exit(1)
    click.echo(SessionReport(record).render())


@cli.command()
@click.argument("session_id")
@click.pass_context
def abort(ctx: click.Context, session_id: str) -> None:
    """Abort SESSION_ID without changing its plan."""
    config = _load_config(ctx)
    service = _build_service(config)
    _open_session_plan(service, session_id)

    try:
        result = service.cancel_session(session_id)
    except (DecisionValidationError, SessionStateError, SessionConflictError) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    logger.info(f"Session {session_id} aborted from CLI")
    click.echo(f"✓ Session {session_id} {result['state']}")


if __name__ == "__main__":
    cli()
