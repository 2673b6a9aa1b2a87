"""
Pytest configuration and fixtures for policyunion tests.

This module provides shared fixtures used across unit and integration tests.
"""

import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def base_team_documents() -> list[dict[str, Any]]:
    """Return a two-level chain: team inherits from base."""
    return [
        {"source_id": "base", "tree": {"repo": {"permissions": "read", "visibility": "private"}}},
        {"source_id": "team", "parent": "base", "tree": {"repo": {"permissions": "write"}}},
    ]


@pytest.fixture
def cyclic_documents() -> list[dict[str, Any]]:
    """Return two documents that name each other as parent."""
    return [
        {"source_id": "A", "parent": "B", "tree": {"x": 1}},
        {"source_id": "B", "parent": "A", "tree": {"x": 2}},
    ]


@pytest.fixture
def documents_yaml() -> str:
    """Return a three-level document set: org -> team -> service."""
    return """
documents:
  - source_id: org
    tree:
      repo:
        visibility: private
        permissions: read
      branches:
        main:
          __strategy__: union
          checks: [lint, test]
  - source_id: team
    parent: org
    tree:
      repo:
        permissions: write
      branches:
        main:
          checks: [security]
  - source_id: service
    parent: team
    tree:
      repo.topics: [payments]
"""


@pytest.fixture
def schema_yaml() -> str:
    """Return schema constraints matching documents_yaml."""
    return """
types:
  repo.permissions: string
  repo.visibility: string
  branches.*.checks: list
required:
  - repo.visibility
allowed_values:
  repo.permissions: [read, write]
"""
