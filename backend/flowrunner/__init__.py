# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
flowrunner - workflow execution engine.

Runs directed acyclic workflows of typed nodes, concurrently where the
graph allows, and keeps a durable record of every run.
"""

__version__ = "1.0.0"
