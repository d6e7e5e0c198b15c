"""
Worker configuration.

Settings come from a YAML file whose string values may reference
environment variables as ``${NAME}``. Selected environment variables
override file values, and a ``.env`` file in the working directory is
loaded first. Missing keys fall back to defaults.
"""

import copy
import importlib
import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml
from dotenv import find_dotenv, load_dotenv

from .clock import Clock, SystemClock
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "VACATION_MONITOR_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "./config.yaml"

DEFAULTS: Dict[str, Any] = {
    'worker': {
        'instance_id': None,
        'shutdown_timeout_seconds': 30,
    },
    'scheduler': {
        'enabled': True,
        'interval_minutes': 5,
        'max_consecutive_errors': 10,
        'batch_size': 50,
    },
    'lock': {
        'name': 'scheduler-lock',
        'duration_seconds': 90,
        'renewal_interval_seconds': 30,
    },
    'storage': {
        'backend': 'mongodb',
        'mongodb': {
            'uri': None,
            'host': 'localhost',
            'port': 27017,
            'db_name': 'vacation-monitor',
            'lock_collection': 'locks',
            'search_collection': 'searches',
        },
    },
    'queue': {
        'backend': 'postgres',
        'name': 'price-monitor-jobs',
        'database_url': None,
        'create_schema': True,
        'lock_duration_seconds': 60,
        'max_auto_lock_renewal_seconds': 300,
        'poll_interval_seconds': 1.0,
        'max_delivery_count': 10,
        'retry_backoff_seconds': 60,
    },
    'processor': {
        'collaborators': None,
    },
    'logging': {
        'level': 'INFO',
    },
}

# Environment variable -> config path
ENV_OVERRIDES: Dict[str, str] = {
    'SCHEDULER_ENABLED': 'scheduler.enabled',
    'SCHEDULER_INTERVAL_MINUTES': 'scheduler.interval_minutes',
    'SCHEDULER_MAX_CONSECUTIVE_ERRORS': 'scheduler.max_consecutive_errors',
    'LOCK_DURATION_SECONDS': 'lock.duration_seconds',
    'LOCK_RENEWAL_INTERVAL_SECONDS': 'lock.renewal_interval_seconds',
    'MONGODB_URI': 'storage.mongodb.uri',
    'MONGODB_DATABASE': 'storage.mongodb.db_name',
    'STORAGE_BACKEND': 'storage.backend',
    'QUEUE_BACKEND': 'queue.backend',
    'QUEUE_NAME': 'queue.name',
    'QUEUE_DATABASE_URL': 'queue.database_url',
    'LOG_LEVEL': 'logging.level',
}

_PLACEHOLDER = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')
_FALSE_VALUES = {'false', '0', 'no', 'off'}
_TRUE_VALUES = {'true', '1', 'yes', 'on'}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _expand_placeholders(value: Any, environ) -> Any:
    if isinstance(value, str):
        return _PLACEHOLDER.sub(lambda m: environ.get(m.group(1), ''), value)
    if isinstance(value, dict):
        return {k: _expand_placeholders(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_placeholders(v, environ) for v in value]
    return value


def parse_bool(value: Any, name: str = 'value') -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _FALSE_VALUES:
        return False
    if text in _TRUE_VALUES:
        return True
    raise ConfigurationError(f"Invalid boolean for {name}: {value!r}")


class Config:
    """Configuration for one worker process, and factory for its components."""

    def __init__(self, config_path: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None,
                 environ: Optional[Dict[str, str]] = None,
                 load_env_file: bool = True,
                 clock: Optional[Clock] = None):
        """
        Load configuration.

        Args:
            config_path: YAML file (defaults to $VACATION_MONITOR_CONFIG_PATH or ./config.yaml);
                a missing file means defaults
            overrides: Nested values applied over the file, before the environment
            environ: Environment mapping (defaults to os.environ)
            load_env_file: Load a .env file from the working directory first
            clock: Time source handed to every component built here

        Raises:
            ConfigurationError: If the file cannot be parsed or a value is invalid
        """
        if load_env_file and environ is None:
            load_dotenv(find_dotenv(usecwd=True), override=False)

        self.environ = os.environ if environ is None else environ
        self.config_path = config_path or self.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH)
        self.clock = clock or SystemClock()
        self._memory_components: Dict[str, Any] = {}

        file_config = self._load_file(self.config_path)
        self.config = _deep_merge(DEFAULTS, _expand_placeholders(file_config, self.environ))
        if overrides:
            self.config = _deep_merge(self.config, overrides)
        self._apply_environment()
        self.validate()

    @staticmethod
    def _load_file(path: str) -> Dict[str, Any]:
        config_file = Path(path)
        if not config_file.exists():
            logger.info(f"Configuration file not found: {config_file}, using defaults")
            return {}

        try:
            with open(config_file, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing configuration file {config_file}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {config_file} must contain a mapping")
        logger.info(f"Loaded configuration from {config_file}")
        return data

    def _apply_environment(self) -> None:
        for env_name, path in ENV_OVERRIDES.items():
            value = self.environ.get(env_name)
            if value is None or value == '':
                continue
            self.set(path, value)

    def get(self, path: str, default: Any = None) -> Any:
        """Read a dotted path such as ``queue.name``."""
        current = self.config
        for part in path.split('.'):
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        return current

    def set(self, path: str, value: Any) -> None:
        parts = path.split('.')
        current = self.config
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value

    def _number(self, path: str, kind=float, minimum: Optional[float] = None) -> Any:
        raw = self.get(path)
        try:
            value = kind(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid value for {path}: {raw!r}")
        if minimum is not None and value < minimum:
            raise ConfigurationError(f"{path} must be at least {minimum}, got {value}")
        return value

    def validate(self) -> None:
        """
        Check every typed value.

        Raises:
            ConfigurationError: On the first invalid value
        """
        parse_bool(self.get('scheduler.enabled'), 'scheduler.enabled')
        self._number('scheduler.interval_minutes', float, minimum=0.01)
        self._number('scheduler.max_consecutive_errors', int, minimum=1)
        self._number('scheduler.batch_size', int, minimum=1)
        self._number('worker.shutdown_timeout_seconds', float, minimum=0)
        self._number('queue.lock_duration_seconds', float, minimum=1)
        self._number('queue.max_auto_lock_renewal_seconds', float, minimum=0)
        self._number('queue.poll_interval_seconds', float, minimum=0)
        self._number('queue.max_delivery_count', int, minimum=1)
        self._number('queue.retry_backoff_seconds', float, minimum=0)

        duration = self._number('lock.duration_seconds', float, minimum=1)
        renewal = self._number('lock.renewal_interval_seconds', float, minimum=1)
        if duration <= renewal:
            raise ConfigurationError(
                f"lock.duration_seconds ({duration}) must exceed "
                f"lock.renewal_interval_seconds ({renewal})"
            )

        if self.queue_backend not in ('postgres', 'memory'):
            raise ConfigurationError(f"Unknown queue backend: {self.queue_backend}")
        if self.storage_backend not in ('mongodb', 'memory'):
            raise ConfigurationError(f"Unknown storage backend: {self.storage_backend}")

        level = str(self.get('logging.level', 'INFO')).upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigurationError(f"Invalid log level: {level}")

    # Typed getters

    @property
    def scheduler_enabled(self) -> bool:
        return parse_bool(self.get('scheduler.enabled'), 'scheduler.enabled')

    @property
    def poll_interval_minutes(self) -> float:
        return self._number('scheduler.interval_minutes', float)

    @property
    def max_consecutive_errors(self) -> int:
        return self._number('scheduler.max_consecutive_errors', int)

    @property
    def batch_size(self) -> int:
        return self._number('scheduler.batch_size', int)

    @property
    def lock_duration(self) -> float:
        return self._number('lock.duration_seconds', float)

    @property
    def lock_renewal_interval(self) -> float:
        return self._number('lock.renewal_interval_seconds', float)

    @property
    def shutdown_timeout(self) -> float:
        return self._number('worker.shutdown_timeout_seconds', float)

    @property
    def queue_backend(self) -> str:
        return str(self.get('queue.backend')).lower()

    @property
    def storage_backend(self) -> str:
        return str(self.get('storage.backend')).lower()

    @property
    def queue_name(self) -> str:
        return self.get('queue.name')

    @property
    def log_level(self) -> str:
        return str(self.get('logging.level', 'INFO')).upper()

    @property
    def instance_id(self) -> Optional[str]:
        return self.get('worker.instance_id')

    def mongodb_params(self) -> Dict[str, Any]:
        return dict(self.get('storage.mongodb') or {})

    # Component factories

    def _shared_memory(self, key: str, factory: Callable[[], Any]) -> Any:
        # Memory backends are shared per Config so publisher and consumer see one queue
        if key not in self._memory_components:
            self._memory_components[key] = factory()
        return self._memory_components[key]

    def get_lock_store(self):
        if self.storage_backend == 'memory':
            from .coordination.lock_store import MemoryLockStore
            return self._shared_memory('lock_store', MemoryLockStore)

        from .coordination.mongodb import MongoLockStore
        return MongoLockStore(self.mongodb_params())

    def get_search_store(self):
        if self.storage_backend == 'memory':
            from .scheduler.search_store import MemorySearchStore
            return self._shared_memory('search_store', MemorySearchStore)

        from .scheduler.mongodb import MongoSearchStore
        return MongoSearchStore(self.mongodb_params())

    def get_queue_transport(self):
        common = dict(
            queue_name=self.queue_name,
            max_delivery_count=self._number('queue.max_delivery_count', int),
            retry_backoff_seconds=self._number('queue.retry_backoff_seconds', float),
            clock=self.clock
        )

        if self.queue_backend == 'memory':
            from .queue.transport import MemoryQueueTransport
            return self._shared_memory('queue', lambda: MemoryQueueTransport(**common))

        dsn = self.get('queue.database_url')
        if not dsn:
            raise ConfigurationError("queue.database_url (QUEUE_DATABASE_URL) is required for the postgres queue")

        from .queue.postgres import PostgresQueueTransport
        return PostgresQueueTransport(
            dsn,
            create_schema=parse_bool(self.get('queue.create_schema'), 'queue.create_schema'),
            **common
        )

    def create_consumer(self):
        from .queue.consumer import JobQueueConsumer
        return JobQueueConsumer(
            self.get_queue_transport(),
            lock_duration=self._number('queue.lock_duration_seconds', float),
            max_auto_lock_renewal=self._number('queue.max_auto_lock_renewal_seconds', float),
            poll_interval=self._number('queue.poll_interval_seconds', float),
            clock=self.clock
        )

    def create_lock(self, holder_id: Optional[str] = None):
        from .coordination.distributed_lock import DistributedLock
        return DistributedLock(
            self.get_lock_store(),
            lock_name=self.get('lock.name'),
            holder_id=holder_id or self.instance_id,
            lock_duration=self.lock_duration,
            renewal_interval=self.lock_renewal_interval,
            clock=self.clock
        )

    def create_scheduler(self, search_store=None, queue=None, lock=None, holder_id: Optional[str] = None):
        from .scheduler.scheduler import Scheduler
        return Scheduler(
            search_store or self.get_search_store(),
            queue or self.create_consumer(),
            lock or self.create_lock(holder_id),
            poll_interval_minutes=self.poll_interval_minutes,
            max_consecutive_errors=self.max_consecutive_errors,
            batch_size=self.batch_size,
            enabled=self.scheduler_enabled,
            clock=self.clock
        )

    def load_collaborators(self):
        """
        Build the job pipeline collaborators from ``processor.collaborators``.

        The entry names a ``module:callable`` taking this Config and returning
        a PipelineCollaborators.

        Raises:
            ConfigurationError: If the entry is missing or cannot be loaded
        """
        target = self.get('processor.collaborators')
        if not target:
            raise ConfigurationError(
                "processor.collaborators is not configured; set it to 'module:callable'"
            )

        module_name, _, attr = str(target).partition(':')
        if not module_name or not attr:
            raise ConfigurationError(f"processor.collaborators must be 'module:callable', got {target!r}")

        try:
            factory = getattr(importlib.import_module(module_name), attr)
        except (ImportError, AttributeError) as e:
            raise ConfigurationError(f"Cannot load processor collaborators {target!r}: {e}")

        return factory(self)

    def create_processor(self, search_store=None):
        from .worker.processor import JobProcessor
        return JobProcessor(
            search_store or self.get_search_store(),
            self.load_collaborators(),
            clock=self.clock
        )
