"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from plansync.config.settings import SyncOptions, SyncSettings
from plansync.models.plan import Plan
from plansync.planning.parser import parse_plan
from plansync.providers.memory import InMemoryTracker

SAMPLE_PLAN = """\
# Payments Platform

## Sprint 0: Foundation (1 week)

Set up the basics.

1. **Set up repository**: Create the repo skeleton
   - Initialize git
   - Add README
2. **Configure CI**
   Agent: devops
   Skill: skills/ci.md
   **Acceptance Criteria:**
   - [ ] Pipeline runs on push

### Acceptance Criteria
- [ ] Repository exists

### Sprint Gate
- [ ] All tests pass

## Sprint 1: Core Features

1. **Build API**

### Acceptance Criteria
- [x] API responds

### Gate Criteria
- [ ] Review done
"""


@pytest.fixture
def plan_text() -> str:
    """Two sprints: Sprint 0 with two tasks, Sprint 1 with one."""
    return SAMPLE_PLAN


@pytest.fixture
def sample_plan() -> Plan:
    """Parsed sample plan."""
    return parse_plan(SAMPLE_PLAN)


@pytest.fixture
def plan_file(tmp_path: Path) -> Path:
    """Sample plan written to disk."""
    path = tmp_path / "PLAN.md"
    path.write_text(SAMPLE_PLAN)
    return path


@pytest.fixture
def fast_options() -> SyncOptions:
    """Options without category labels, delays or pacing.

    Without category labels the sample plan needs exactly nine resources.
    """
    return SyncOptions(
        category_labels=[],
        base_delay=0.0,
        max_delay=0.0,
        pacing_interval=0.0,
    )


@pytest.fixture
def memory_tracker() -> InMemoryTracker:
    """Empty in-memory tracker with a board."""
    return InMemoryTracker()


@pytest.fixture
def memory_settings() -> SyncSettings:
    """Settings for the in-memory tracker."""
    return SyncSettings(
        organization="acme",
        repository="payments",
        tracker={"provider_type": "memory"},
        sync={"base_delay": 0.0, "pacing_interval": 0.0},
    )


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """YAML configuration for the in-memory tracker."""
    config_content = """
organization: acme
repository: payments

tracker:
  provider_type: memory

sprint_definitions:
  - number: 0
    description: Foundation work
    due_on: 2026-11-01

sync:
  concurrency: 2
  base_delay: 0
  pacing_interval: 0
"""
    config_path = tmp_path / "plansync.yaml"
    config_path.write_text(config_content)
    return config_path
