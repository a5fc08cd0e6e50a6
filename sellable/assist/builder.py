import logging
LOGGER = logging.getLogger(__name__)

from typing import Optional
from sellable.assist.cache import ProductCache
from sellable.assist.chunker import MessageChunker, DEFAULT_MESSAGE_PAUSE_SECONDS
from sellable.assist.config import Config
from sellable.assist.continuation import ContinuationPlanner
from sellable.assist.messages import MessageContentPreparer
from sellable.assist.providers.client import ApiClient
from sellable.assist.providers.openai.OAIAClient import OAIAClient
from sellable.assist.replies import ReplyService
from sellable.assist.runs import RunCoordinator
from sellable.assist.scheduler import MaintenanceScheduler
from sellable.assist.store import KeyValueStore, PersistentKeyValueStore
from sellable.assist.threads import ThreadLifecycleManager
from sellable.utils.image_validation import ImageValidator


def build_reply_service(config: Optional[Config] = None, store: Optional[KeyValueStore] = None,
                        api_client: Optional[ApiClient] = None) -> ReplyService:
    """
    Wires the whole reply pipeline from configuration.

    Each call builds a new object graph; share the returned service rather
    than building one per request. ``store`` and ``api_client`` can be passed
    in to reuse existing instances.
    """
    config = config or Config.config()
    store = store or PersistentKeyValueStore(config.get_metadata_db_url())
    api_client = api_client or OAIAClient.from_config(config)

    thread_settings = config.get_thread_settings()
    preparer_settings = config.get_preparer_settings()

    chunker = MessageChunker(max_blocks=preparer_settings.max_blocks_per_message)
    thread_manager = ThreadLifecycleManager(
        api_client, store, settings=thread_settings, chunker=chunker,
        message_pause=DEFAULT_MESSAGE_PAUSE_SECONDS,
    )
    image_validator = ImageValidator() if preparer_settings.validate_images else None
    service = ReplyService(
        api_client=api_client,
        thread_manager=thread_manager,
        preparer=MessageContentPreparer(preparer_settings, image_validator=image_validator),
        run_coordinator=RunCoordinator(api_client, config.get_run_settings()),
        planner=ContinuationPlanner(thread_settings),
        store=store,
        assistants=config.get_assistant_ids(),
    )
    LOGGER.info(f"Built reply service with assistants for roles: {sorted(service.assistants)}")
    return service


def build_product_cache(store: KeyValueStore, config: Optional[Config] = None) -> ProductCache:
    config = config or Config.config()
    return ProductCache(store, ttl_seconds=config.get_product_cache_ttl())


def build_maintenance_scheduler(service: ReplyService, config: Optional[Config] = None,
                                product_cache: Optional[ProductCache] = None) -> MaintenanceScheduler:
    config = config or Config.config()
    return MaintenanceScheduler(
        service.thread_manager,
        cleanup_interval=config.get_cleanup_interval(),
        consistency_interval=config.get_consistency_check_interval(),
        product_cache=product_cache,
    )
