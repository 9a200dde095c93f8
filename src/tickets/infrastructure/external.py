"""
Ticket External Integrations
============================

- YAML escalation-config file watcher
- APScheduler jobs for the escalation sweep, outbox drain and TAT reminders
"""

import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from src.config import Settings, settings as default_settings
from src.core import ConfigurationException
from src.shared.infrastructure.logging import get_logger
from src.tickets.domain import EscalationConfig

logger = get_logger(__name__)

Job = Callable[[], Awaitable[Any]]


def escalation_defaults(config: Settings) -> Dict[str, Any]:
    """EscalationConfig values taken from the environment."""
    return {
        "inactivity_days": config.auto_escalation_days,
        "cooldown_days": config.escalation_cooldown_days,
        "extension_cap": config.max_tat_extensions,
        "lifecycle_days": config.lifecycle_days,
        "reopen_cap": config.max_reopens,
    }


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation config file changes."""

    def __init__(self, config_manager: "EscalationConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info(f"Escalation config file changed: {event.src_path}")
            self.config_manager.reload()


class EscalationConfigManager:
    """
    Thread-safe escalation configuration with hot-reload support.

    File values override the environment defaults. An invalid file on
    reload keeps the previous configuration.
    """

    def __init__(self, config: Optional[Settings] = None):
        self._settings = config or default_settings
        self._config: Optional[EscalationConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Optional[Path] = None) -> EscalationConfig:
        """Initial configuration load."""
        self._path = Path(path or self._settings.escalation_config_path)
        config = self._load_from_file(self._path)
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> EscalationConfig:
        data = escalation_defaults(self._settings)
        if not path.exists():
            logger.warning(f"Escalation config file not found: {path}, using environment defaults")
            return EscalationConfig(**data)

        with open(path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigurationException(f"Escalation config must be a mapping: {path}")
        section = loaded.get("escalation", loaded)
        if not isinstance(section, dict):
            raise ConfigurationException(f"Escalation section must be a mapping: {path}")
        data.update(section)

        try:
            return EscalationConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationException(f"Invalid escalation config: {path}", {"errors": e.errors()}) from e

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except (ConfigurationException, yaml.YAMLError, OSError) as e:
            logger.error(f"Failed to reload escalation config: {e}")
            return False

        with self._lock:
            self._config = new_config
        logger.info("Escalation configuration reloaded", extra=new_config.model_dump())
        return True

    def start_watching(self) -> None:
        """
        Start watching the configuration file for changes.

        Skipped when the file doesn't exist or inotify is unavailable.
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(f"Escalation config file doesn't exist, skipping file watch: {self._path}")
            return

        try:
            self._observer = Observer()
            self._observer.schedule(
                ConfigFileHandler(self, self._path),
                str(self._path.parent),
                recursive=False
            )
            self._observer.start()
            logger.info(f"Started watching escalation config file: {self._path}")
        except OSError as e:
            logger.warning(f"File watching not available, using static config: {e}")
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def config(self) -> EscalationConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("Escalation configuration not loaded")
            return self._config


class LifecycleScheduler:
    """
    APScheduler wrapper for the background jobs.

    - escalation sweep every escalation_sweep_interval_minutes
    - outbox drain every outbox_drain_interval_seconds
    - TAT reminders Monday to Friday at tat_reminder_hour (business timezone)
    """

    def __init__(self, config: Optional[Settings] = None):
        self._settings = config or default_settings
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, sweep: Job, drain: Job, reminders: Optional[Job] = None) -> None:
        if self._running:
            logger.warning("Lifecycle scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=self._settings.business_timezone)
        self._scheduler.add_job(
            sweep,
            "interval",
            minutes=self._settings.escalation_sweep_interval_minutes,
            id="escalation_sweep",
            name="Escalation Sweep",
            misfire_grace_time=300,
            max_instances=1,
            replace_existing=True
        )
        self._scheduler.add_job(
            drain,
            "interval",
            seconds=self._settings.outbox_drain_interval_seconds,
            id="outbox_drain",
            name="Outbox Drain",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        if reminders is not None and self._settings.enable_tat_reminders:
            self._scheduler.add_job(
                reminders,
                CronTrigger(
                    day_of_week="mon-fri",
                    hour=self._settings.tat_reminder_hour,
                    timezone=self._settings.business_timezone,
                ),
                id="tat_reminders",
                name="TAT Reminders",
                misfire_grace_time=3600,
                max_instances=1,
                replace_existing=True
            )

        self._scheduler.start()
        self._running = True
        logger.info(
            "Lifecycle scheduler started",
            extra={
                "sweep_interval_minutes": self._settings.escalation_sweep_interval_minutes,
                "drain_interval_seconds": self._settings.outbox_drain_interval_seconds,
                "tat_reminders": reminders is not None and self._settings.enable_tat_reminders,
            }
        )

    async def stop(self) -> None:
        if not self._running:
            return
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Lifecycle scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def job_ids(self):
        if self._scheduler is None:
            return []
        return [job.id for job in self._scheduler.get_jobs()]
