import logging
import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from mip.config.loader import load_config
from mip.config.models import AppConfig
from mip.domain.cancellation import CancellationToken
from mip.domain.events import ProcessingProgress
from mip.domain.models import ProcessingStatus
from mip.infrastructure.ffmpeg import FFmpegThumbnailExtractor
from mip.infrastructure.file_scanner import FileScanner
from mip.infrastructure.folder_watcher import FolderWatcher
from mip.infrastructure.housekeeping import HousekeepingService
from mip.infrastructure.indexer import TranscriptIndexer
from mip.infrastructure.item_store import MediaItemStore
from mip.infrastructure.logging import setup_logging
from mip.infrastructure.media_service import MediaService
from mip.infrastructure.transcriber import AssemblyAITranscriber
from mip.infrastructure.verification_store import VerificationStore
from mip.pipeline.processing import ProcessingPipeline
from mip.pipeline.queue_monitor import QueueMonitor
from mip.pipeline.scheduler import TaskScheduler, TrackedTask

app = typer.Typer(help="MIP (Media Ingestion Pipeline) - watch folders, transcribe and index media")
console = Console()

DEFAULT_CONFIG = Path("conf/mip.yaml")


@dataclass
class Services:
    """Everything the commands need, wired once from AppConfig."""

    config: AppConfig
    store: MediaItemStore
    media: MediaService
    verification: VerificationStore
    indexer: TranscriptIndexer

    def close(self) -> None:
        self.indexer.close()
        self.store.close()


def build_services(config: AppConfig) -> Services:
    store = MediaItemStore(config.database_path)
    media = MediaService(store, config.transcripts_dir)
    verification = VerificationStore(config.verification_dir, config.raw_output_dir)
    indexer = TranscriptIndexer(config.database_path, store, config.transcripts_dir)
    return Services(config=config, store=store, media=media, verification=verification, indexer=indexer)


def build_pipeline_factory(
    services: Services,
    transcriber: AssemblyAITranscriber,
) -> Callable[[], ProcessingPipeline]:
    config = services.config
    thumbnails = (
        FFmpegThumbnailExtractor(offset_s=config.pipeline.thumbnail_offset_s)
        if config.pipeline.thumbnails else None
    )
    indexer = services.indexer if config.pipeline.indexing else None

    def factory() -> ProcessingPipeline:
        return ProcessingPipeline(
            catalog=services.media,
            transcriber=transcriber,
            verification=services.verification,
            thumbnails=thumbnails,
            indexer=indexer,
            thumbnail_dir_name=config.pipeline.thumbnail_dir_name,
        )
    return factory


def _load_config(config_path: Path, data_dir: Optional[Path], debug: bool) -> AppConfig:
    try:
        config = load_config(config_path)
    except FileNotFoundError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except (ValidationError, ValueError) as exc:
        typer.secho(f"Error: invalid config {config_path}: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    if data_dir is not None:
        config.general.data_dir = str(data_dir)
    if debug:
        config.general.debug = True
    return config


def _setup(config: AppConfig, log_path: Optional[Path] = None, console_log: bool = False) -> logging.Logger:
    return setup_logging(
        Path(config.general.data_dir).expanduser(),
        debug=config.general.debug,
        log_path=log_path or (Path(config.general.log_path) if config.general.log_path else None),
        console=console_log,
    )


def _parse_status(value: Optional[str]) -> Optional[ProcessingStatus]:
    if value is None:
        return None
    for status in ProcessingStatus:
        if status.value.lower() == value.lower() or status.name.lower() == value.lower():
            return status
    valid = ", ".join(s.value for s in ProcessingStatus)
    raise typer.BadParameter(f"Unknown status '{value}' (expected one of: {valid})")


@app.command()
def run(
    folders: Optional[List[Path]] = typer.Argument(None, help="Folders to watch (overrides config)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Override data directory"),
    poll_interval: Optional[float] = typer.Option(None, "--poll-interval", help="Queue poll interval in seconds"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Watch folders and process queued media until interrupted."""
    config = _load_config(config_path, data_dir, debug)
    if folders:
        config.watch.folders = [str(f) for f in folders]
    if poll_interval is not None:
        config.queue.poll_interval_s = poll_interval
    if not config.watch.folders:
        typer.secho("Error: no folders to watch (pass them or set watch.folders)", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    interrupted = False
    outcomes: Counter = Counter()
    outcomes_lock = threading.Lock()

    def record_outcome(task: TrackedTask) -> None:
        with outcomes_lock:
            outcomes[task.state.value] += 1

    try:
        logger = _setup(config, log_path, console_log=True)
        services = build_services(config)
        transcriber = AssemblyAITranscriber(config.transcription)
        if not config.transcription.resolve_api_key():
            logger.warning(f"No AssemblyAI API key ({config.transcription.api_key_env}); transcription will fail")

        housekeeping = HousekeepingService()
        for directory in (config.verification_dir, config.raw_output_dir, config.transcripts_dir):
            housekeeping.cleanup_temp_files(directory, min_age_s=config.queue.temp_file_min_age_s)
        if config.queue.requeue_interrupted:
            housekeeping.requeue_interrupted(services.store)

        def log_progress(progress: ProcessingProgress) -> None:
            logger.debug(f"PROGRESS: {progress.media_id} {progress.stage} {progress.percent:.0f}%")

        shutdown = CancellationToken()
        scheduler = TaskScheduler(on_finished=record_outcome)
        monitor = QueueMonitor(
            store=services.store,
            scheduler=scheduler,
            pipeline_factory=build_pipeline_factory(services, transcriber),
            poll_interval_s=config.queue.poll_interval_s,
            progress_sink=log_progress,
        )
        watcher = FolderWatcher(
            config.watch,
            services.media,
            indexer=services.indexer,
            skip_dirs=[config.pipeline.thumbnail_dir_name],
        )

        monitor.start(shutdown)
        watcher.start(shutdown)
        try:
            while not shutdown.wait(0.5):
                pass
        except KeyboardInterrupt:
            interrupted = True
            logger.info("Shutdown requested (Ctrl+C)")
        finally:
            shutdown.cancel("Shutdown requested")
            watcher.stop()
            monitor.stop(timeout=config.queue.poll_interval_s)
            scheduler.shutdown(timeout=config.queue.shutdown_timeout_s)
            transcriber.close()
            services.close()
    except typer.Exit:
        raise
    except Exception as e:
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    summary = ", ".join(f"{count} {state}" for state, count in sorted(outcomes.items())) or "none"
    typer.secho(f"Tasks finished: {summary}")

    if interrupted:
        typer.secho("\nStopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)


@app.command()
def enqueue(
    paths: List[Path] = typer.Argument(..., help="Media files or folders to import and queue"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Override data directory"),
):
    """Import media files and mark them Queued for the next `run`."""
    config = _load_config(config_path, data_dir, debug=False)
    _setup(config)
    services = build_services(config)
    scanner = FileScanner(
        config.watch.media_extensions,
        include_subfolders=config.watch.include_subfolders,
        skip_dirs=[config.watch.transcript_dir_name, config.pipeline.thumbnail_dir_name],
    )
    queued = 0
    try:
        for path in paths:
            files = list(scanner.scan(path)) if path.is_dir() else [path]
            if not files:
                typer.secho(f"No media files in {path}", fg=typer.colors.YELLOW)
            for file_path in files:
                if not file_path.is_file():
                    typer.secho(f"Not found: {file_path}", fg=typer.colors.RED, err=True)
                    continue
                item = services.media.ingest(file_path)
                if item is None:
                    continue
                console.print(f"{item.id}  {item.status.value:<12} {file_path}")
                if item.status == ProcessingStatus.QUEUED:
                    queued += 1
    finally:
        services.close()
    if queued == 0:
        raise typer.Exit(code=1)


@app.command()
def status(
    status_filter: Optional[str] = typer.Option(None, "--status", "-s", help="Only items with this status"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows to show"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Override data directory"),
):
    """Show media items and their processing status."""
    wanted = _parse_status(status_filter)
    config = _load_config(config_path, data_dir, debug=False)
    _setup(config)
    services = build_services(config)
    try:
        items = services.store.list_items(status=wanted, limit=limit)
    finally:
        services.close()

    table = Table(title="Media items")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Transcribed", justify="center")
    table.add_column("Modified")
    for item in items:
        color = {
            ProcessingStatus.COMPLETED: "green",
            ProcessingStatus.FAILED: "red",
            ProcessingStatus.CANCELLED: "yellow",
        }.get(item.status, "white")
        table.add_row(
            item.id,
            item.file_path.name,
            f"[{color}]{item.status.value}[/{color}]",
            "yes" if item.is_transcribed else "",
            item.modified_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command()
def search(
    query: str = typer.Argument(..., help="Text to look for in transcripts"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum hits"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Override data directory"),
):
    """Search indexed transcript segments."""
    config = _load_config(config_path, data_dir, debug=False)
    _setup(config)
    services = build_services(config)
    try:
        hits = services.indexer.search(query, limit=limit)
        names = {}
        for hit in hits:
            if hit.media_id not in names:
                item = services.store.get(hit.media_id)
                names[hit.media_id] = item.file_path.name if item else hit.media_id
    finally:
        services.close()

    if not hits:
        typer.secho(f"No matches for '{query}'", fg=typer.colors.YELLOW)
        return
    table = Table(title=f"Matches for '{query}'")
    table.add_column("File", style="cyan")
    table.add_column("Time", justify="right")
    table.add_column("Speaker")
    table.add_column("Text")
    for hit in hits:
        minutes, seconds = divmod(int(hit.start), 60)
        table.add_row(names[hit.media_id], f"{minutes:02d}:{seconds:02d}", hit.speaker or "", hit.text)
    console.print(table)


@app.command()
def verify(
    path: Path = typer.Argument(..., help="Media file to check"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to YAML config"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Override data directory"),
):
    """Show whether a file's content has already been transcribed and verified."""
    if not path.is_file():
        typer.secho(f"Error: file not found: {path}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    config = _load_config(config_path, data_dir, debug=False)
    _setup(config)
    verification = VerificationStore(config.verification_dir, config.raw_output_dir)

    content_hash = verification.compute_hash(path)
    record = verification.load(content_hash)
    processed = verification.is_already_processed(path, content_hash)

    console.print(f"File:      {path}")
    console.print(f"SHA-256:   {content_hash}")
    if record is not None:
        console.print(f"Record:    {record.status} (verified={record.is_verified}, attempts={record.attempt_count})")
        console.print(f"Output:    {record.output_path or '-'}")
    else:
        console.print("Record:    none")
    if processed:
        typer.secho("Already processed: transcription will be skipped", fg=typer.colors.GREEN)
    else:
        typer.secho("Not processed: file will be transcribed", fg=typer.colors.YELLOW)


if __name__ == "__main__":
    app()
