"""Tracker construction from settings."""

import structlog

from plansync.config.settings import SyncSettings
from plansync.exceptions import ConfigurationError
from plansync.providers.base import TrackerClient
from plansync.providers.github_rest import GitHubTracker
from plansync.providers.memory import InMemoryTracker

log = structlog.get_logger(__name__)


def create_tracker(settings: SyncSettings) -> TrackerClient:
    """Create the tracker named by ``settings.tracker.provider_type``.

    Raises:
        ConfigurationError: If the provider type is unknown or incomplete
    """
    tracker_config = settings.tracker
    provider_type = tracker_config.provider_type
    log.debug("creating_tracker", provider_type=provider_type, repository=settings.full_repository)

    if provider_type == "github":
        if tracker_config.api_token is None:
            raise ConfigurationError("GitHub tracker requires tracker.api_token")
        return GitHubTracker(
            token=tracker_config.api_token.get_secret_value(),
            owner=settings.organization,
            repo=settings.repository,
            base_url=tracker_config.base_url,
            project_number=tracker_config.project_number,
        )

    if provider_type == "memory":
        return InMemoryTracker(has_board=tracker_config.project_number is not None)

    raise ConfigurationError(f"Unknown tracker provider: {provider_type}")
