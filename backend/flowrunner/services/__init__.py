# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Service layer for flowrunner.
"""

from flowrunner.services.execution_service import ExecutionService, create_execution_service

__all__ = ["ExecutionService", "create_execution_service"]
