import logging
LOGGER = logging.getLogger(__name__)

from dotenv import load_dotenv
import os
from dataclasses import dataclass
from typing import Dict, Optional
from sellable.assist.cache import bond_cache
from sellable.assist.errors import ConfigurationError

load_dotenv()


@dataclass(frozen=True)
class ThreadSettings:
    ttl_seconds: float = 2 * 60 * 60
    thread_info_max_age_seconds: float = 30 * 24 * 60 * 60
    ignore_older_than_seconds: float = 24 * 60 * 60
    new_thread_max_messages: int = 50
    long_conversation_threshold: int = 100
    recent_messages: int = 30
    long_conversation_max_new_messages: int = 50
    reactivation_retries: int = 3
    reactivation_backoff_seconds: float = 0.5


@dataclass(frozen=True)
class RunSettings:
    poll_interval_seconds: float = 1.0
    max_attempts: int = 60
    timeout_seconds: float = 90.0
    max_transient_retries: int = 5


@dataclass(frozen=True)
class PreparerSettings:
    max_blocks_per_message: int = 10
    max_product_images: int = 5
    image_detail: Optional[str] = "high"
    validate_images: bool = True


class Config:

    def __init__(self):
        self.openai_api_key = os.getenv('OPENAI_KEY')
        self.openai_project = os.getenv('OPENAI_PROJECT')
        self.openai_base_url = os.getenv('OPENAI_BASE_URL')
        LOGGER.info("Created Config instance")

    @classmethod
    @bond_cache
    def config(cls):
        return Config()

    def _get_number(self, env_var: str, default, cast=float):
        raw = os.getenv(env_var)
        if raw is None or raw.strip() == "":
            return default
        try:
            value = cast(raw)
        except ValueError:
            raise ConfigurationError(f"{env_var} must be a number, got '{raw}'")
        if value < 0:
            raise ConfigurationError(f"{env_var} must not be negative, got '{raw}'")
        return value

    def _get_flag(self, env_var: str, default: bool) -> bool:
        raw = os.getenv(env_var)
        if raw is None:
            return default
        return raw.strip().lower() in ['true', '1', 'yes', 'on']

    def get_openai_api_key(self) -> str:
        if not self.openai_api_key:
            raise ConfigurationError("OPENAI_KEY environment variable not set.")
        return self.openai_api_key

    def get_openai_client_options(self) -> Dict:
        options = {
            'api_key': self.get_openai_api_key(),
            'max_retries': self._get_number('OPENAI_MAX_RETRIES', 2, int),
            'timeout': self._get_number('OPENAI_TIMEOUT_SECONDS', 60.0),
        }
        if self.openai_project:
            options['project'] = self.openai_project
        if self.openai_base_url:
            options['base_url'] = self.openai_base_url
        return options

    def get_metadata_db_url(self) -> str:
        return os.getenv('SELLABLE_METADATA_DB_URL', 'sqlite:////tmp/.sellable.db')

    def get_thread_settings(self) -> ThreadSettings:
        return ThreadSettings(
            ttl_seconds=self._get_number('SELLABLE_THREAD_TTL_SECONDS', 2 * 60 * 60),
            thread_info_max_age_seconds=self._get_number('SELLABLE_THREAD_INFO_MAX_AGE_SECONDS', 30 * 24 * 60 * 60),
            ignore_older_than_seconds=self._get_number('SELLABLE_IGNORE_OLDER_THAN_SECONDS', 24 * 60 * 60),
            new_thread_max_messages=self._get_number('SELLABLE_NEW_THREAD_MAX_MESSAGES', 50, int),
            long_conversation_threshold=self._get_number('SELLABLE_LONG_CONVERSATION_THRESHOLD', 100, int),
            recent_messages=self._get_number('SELLABLE_RECENT_MESSAGES', 30, int),
            long_conversation_max_new_messages=self._get_number(
                'SELLABLE_LONG_CONVERSATION_MAX_NEW_MESSAGES', 50, int),
            reactivation_retries=self._get_number('SELLABLE_REACTIVATION_RETRIES', 3, int),
            reactivation_backoff_seconds=self._get_number('SELLABLE_REACTIVATION_BACKOFF_SECONDS', 0.5),
        )

    def get_run_settings(self) -> RunSettings:
        return RunSettings(
            poll_interval_seconds=self._get_number('SELLABLE_RUN_POLL_INTERVAL_SECONDS', 1.0),
            max_attempts=self._get_number('SELLABLE_RUN_MAX_ATTEMPTS', 60, int),
            timeout_seconds=self._get_number('SELLABLE_RUN_TIMEOUT_SECONDS', 90.0),
            max_transient_retries=self._get_number('SELLABLE_RUN_MAX_TRANSIENT_RETRIES', 5, int),
        )

    def get_preparer_settings(self) -> PreparerSettings:
        detail = os.getenv('SELLABLE_IMAGE_DETAIL', 'high').strip().lower()
        if detail not in ['high', 'low', 'auto', '']:
            raise ConfigurationError(f"SELLABLE_IMAGE_DETAIL must be high, low or auto, got '{detail}'")
        max_blocks = self._get_number('SELLABLE_MAX_BLOCKS_PER_MESSAGE', 10, int)
        if max_blocks < 2:
            raise ConfigurationError("SELLABLE_MAX_BLOCKS_PER_MESSAGE must be at least 2")
        return PreparerSettings(
            max_blocks_per_message=max_blocks,
            max_product_images=self._get_number('SELLABLE_MAX_PRODUCT_IMAGES', 5, int),
            image_detail=detail or None,
            validate_images=self._get_flag('SELLABLE_VALIDATE_IMAGES', True),
        )

    def get_cleanup_interval(self) -> float:
        return self._get_number('SELLABLE_CLEANUP_INTERVAL_SECONDS', 15 * 60)

    def get_consistency_check_interval(self) -> float:
        return self._get_number('SELLABLE_CONSISTENCY_CHECK_INTERVAL_SECONDS', 60)

    def get_product_cache_ttl(self) -> float:
        return self._get_number('SELLABLE_PRODUCT_CACHE_TTL_SECONDS', 24 * 60 * 60)

    def get_assistant_ids(self) -> Dict[str, str]:
        """
        Assistant ids configured per chat role. Roles without an id are left out.
        """
        assistants = {}
        for role in ['seller', 'buyer', 'default']:
            assistant_id = os.getenv(f'SELLABLE_{role.upper()}_ASSISTANT_ID')
            if assistant_id:
                assistants[role] = assistant_id
        LOGGER.debug(f"Configured assistants for roles: {list(assistants.keys())}")
        return assistants
