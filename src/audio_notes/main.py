from __future__ import annotations

import atexit
import logging

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from audio_notes.config import Settings, load_settings
from audio_notes.db.database import Database
from audio_notes.db.jobs import JobsRepository
from audio_notes.db.recent import RecentTranscriptionsRepository
from audio_notes.mcp_tools import ToolRegistry
from audio_notes.pipeline import TranscriptionPipeline
from audio_notes.preflight import log_preflight
from audio_notes.services.audio import AudioNormalizer
from audio_notes.services.models import ModelManager
from audio_notes.services.storage import StorageService
from audio_notes.worker import BackgroundWorker

logger = logging.getLogger(__name__)


class AppRuntime:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.database = Database(settings.database_path)
        self.jobs = JobsRepository(self.database)
        self.recent = RecentTranscriptionsRepository(self.database, settings.max_recent_transcriptions)

        self.normalizer = AudioNormalizer(
            ffmpeg_binary=settings.ffmpeg_binary,
            ffprobe_binary=settings.ffprobe_binary,
            work_dir=settings.work_dir,
        )
        self.models = ModelManager(
            settings.models_dir,
            connect_timeout_seconds=settings.download_connect_timeout_seconds,
            stall_timeout_seconds=settings.download_stall_timeout_seconds,
            max_attempts=settings.download_max_attempts,
            retry_backoff_seconds=settings.download_retry_backoff_seconds,
        )
        self.storage = StorageService(settings.output_dir)
        self.pipeline = TranscriptionPipeline(
            settings=settings,
            normalizer=self.normalizer,
            models=self.models,
            storage=self.storage,
            recent=self.recent,
        )

        interrupted = self.jobs.fail_interrupted()
        if interrupted:
            logger.warning("Marked %s interrupted job(s) as failed", interrupted)

        self.worker = BackgroundWorker(
            jobs=self.jobs,
            pipeline=self.pipeline,
            normalizer=self.normalizer,
            poll_interval_seconds=settings.poll_interval_seconds,
            worker_count=settings.worker_count,
        )

    def close(self) -> None:
        self.worker.stop()
        self.database.close()


def create_app(runtime: AppRuntime) -> FastMCP:
    mcp = FastMCP(name="audio-notes-mcp")

    tools = ToolRegistry(
        settings=runtime.settings,
        jobs=runtime.jobs,
        recent=runtime.recent,
        models=runtime.models,
        normalizer=runtime.normalizer,
        worker=runtime.worker,
    )
    tools.register(mcp)

    @mcp.custom_route(runtime.settings.health_path, methods=["GET"])
    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "worker_running": runtime.worker.is_running,
                "processing_mode": runtime.settings.processing_mode,
                "db_path": str(runtime.settings.database_path),
                "mcp_path": runtime.settings.mcp_path,
            }
        )

    return mcp


def cli() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    runtime = AppRuntime(settings)
    log_preflight(settings, runtime.models)
    runtime.worker.start()
    atexit.register(runtime.close)

    app = create_app(runtime)
    logger.info("Starting MCP server on %s:%s%s", settings.host, settings.port, settings.mcp_path)
    app.run(
        transport="http",
        host=settings.host,
        port=settings.port,
        path=settings.mcp_path,
    )


if __name__ == "__main__":
    cli()
