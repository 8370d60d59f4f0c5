"""
Wiring for the generation pipeline.

Builds every component from AppConfig once, at process start, and passes
them to each other explicitly. Both the web process and the standalone
worker process go through Pipeline.
"""

from typing import Optional

from printcraft.config import AppConfig, PipelineSettings
from printcraft.jobs.database import JobStore
from printcraft.jobs.finalizer import JobFinalizer
from printcraft.jobs.queue import JobScheduler
from printcraft.jobs.service import GenerationService
from printcraft.jobs.worker import WorkerPool
from printcraft.notify.base import Notifier, JobEventPublisher
from printcraft.notify.memory import InMemoryNotifier
from printcraft.providers.base import ProviderClient, RateLimiter
from printcraft.providers.fake import FakeProvider
from printcraft.storage.base import StorageClient
from printcraft.storage.local import LocalStorage
from printcraft.utils.logging import get_logger

logger = get_logger("pipeline")


def build_provider(cfg: AppConfig) -> ProviderClient:
    rate_limiter = RateLimiter(
        max_calls=cfg.PROVIDER_RATE_LIMIT_PER_MINUTE,
        period=60.0,
        max_wait=cfg.PROVIDER_RATE_LIMIT_MAX_WAIT_SECONDS
    )

    if cfg.PROVIDER_BACKEND == "replicate":
        if not cfg.replicate_configured:
            raise ValueError("PROVIDER_BACKEND=replicate requires REPLICATE_API_TOKEN")
        from printcraft.providers.replicate_provider import ReplicateProvider
        return ReplicateProvider(
            api_token=cfg.REPLICATE_API_TOKEN,
            model=cfg.REPLICATE_MODEL,
            webhook_url=cfg.PROVIDER_WEBHOOK_URL,
            rate_limiter=rate_limiter
        )

    return FakeProvider(rate_limiter=rate_limiter)


def build_storage(cfg: AppConfig) -> StorageClient:
    if cfg.STORAGE_BACKEND == "supabase":
        if not cfg.supabase_configured:
            raise ValueError("STORAGE_BACKEND=supabase requires SUPABASE_URL and SUPABASE_SERVICE_KEY")
        from printcraft.storage.supabase_storage import SupabaseStorage, get_supabase_admin_client
        client = get_supabase_admin_client(cfg.SUPABASE_URL, cfg.SUPABASE_SERVICE_KEY)
        return SupabaseStorage(client, cfg.STORAGE_BUCKET)

    return LocalStorage(cfg.LOCAL_STORAGE_DIR, cfg.PUBLIC_BASE_URL)


def build_notifier(cfg: AppConfig) -> Notifier:
    if cfg.NOTIFIER_BACKEND == "redis":
        if not cfg.REDIS_URL:
            raise ValueError("NOTIFIER_BACKEND=redis requires REDIS_URL")
        from printcraft.notify.redis_notifier import RedisNotifier
        return RedisNotifier(cfg.REDIS_URL)

    return InMemoryNotifier()


class Pipeline:
    """
    All pipeline components for one process.

    Usage:
        pipeline = Pipeline.from_config(config)
        await pipeline.start(run_workers=True)
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        store: JobStore,
        provider: ProviderClient,
        storage: StorageClient,
        notifier: Notifier,
        settings: PipelineSettings
    ):
        self.settings = settings
        self.store = store
        self.provider = provider
        self.storage = storage
        self.notifier = notifier

        self.scheduler = JobScheduler(store, settings)
        self.publisher = JobEventPublisher(notifier)
        self.finalizer = JobFinalizer(store, self.scheduler, storage, self.publisher, settings)
        self.service = GenerationService(
            store,
            self.scheduler,
            provider,
            notifier,
            self.publisher,
            self.finalizer,
            settings
        )
        self.pool: Optional[WorkerPool] = None

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "Pipeline":
        return cls(
            store=JobStore(cfg.job_db_path),
            provider=build_provider(cfg),
            storage=build_storage(cfg),
            notifier=build_notifier(cfg),
            settings=cfg.pipeline_settings
        )

    async def start(self, run_workers: bool = True):
        await self.store.connect()
        await self.scheduler.initialize()

        recovered = await self.scheduler.recover_orphans()
        logger.info(
            "Pipeline started",
            db_path=self.store.db_path,
            provider=self.provider.name,
            storage=self.storage.name,
            recovered_jobs=recovered,
            run_workers=run_workers
        )

        if run_workers:
            self.pool = WorkerPool(
                self.store,
                self.scheduler,
                self.provider,
                self.storage,
                self.publisher,
                self.settings,
                finalizer=self.finalizer
            )
            self.pool.start()

    async def stop(self):
        if self.pool:
            await self.pool.shutdown()
            self.pool = None
        await self.provider.close()
        await self.notifier.close()
        await self.store.close()
        logger.info("Pipeline stopped")
