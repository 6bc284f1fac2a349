# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Shared fixtures for flowrunner tests.

Provides a handler registry, in-memory stores and a wired ExecutionService.
"""

import os
import sys
from concurrent.futures import ThreadPoolExecutor

import pytest

# Add backend to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from flowrunner.core.config import Config
from flowrunner.engine.handlers import register_builtin_handlers
from flowrunner.engine.registry import HandlerRegistry
from flowrunner.execution_store import InMemoryExecutionStore
from flowrunner.services.execution_service import ExecutionService
from flowrunner.workflow_store import InMemoryWorkflowSource
from tests.helpers import fail, upper


# ============================================================================
# Engine Fixtures
# ============================================================================

@pytest.fixture
def config():
    """Fast retries and short timeouts; History mirror disabled"""
    return Config(
        default_node_timeout=5.0,
        node_retry_delay=0.0,
        store_retry_attempts=2,
        store_retry_delay=0.0,
        store_retry_max_delay=0.0,
        history_url=None,
    )


@pytest.fixture
def registry():
    """Built-in handlers plus 'fail' and 'upper'"""
    registry = register_builtin_handlers(HandlerRegistry())
    registry.register("fail", fail)
    registry.register("upper", upper)
    return registry


@pytest.fixture
def worker_pool():
    pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="test-node")
    yield pool
    pool.shutdown(wait=False)


# ============================================================================
# Storage Fixtures
# ============================================================================

@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def workflow_source():
    return InMemoryWorkflowSource()


# ============================================================================
# Service Fixture
# ============================================================================

@pytest.fixture
def service(workflow_source, store, registry, config, worker_pool):
    """ExecutionService over in-memory collaborators"""
    return ExecutionService(workflow_source, store, registry, config=config, worker_pool=worker_pool)
