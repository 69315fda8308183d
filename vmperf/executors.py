"""Batch executors.

The real executor (a telemetry query per batch) lives outside this package
and is plugged in by import path through ``BATCH_EXECUTOR``. Without one the
worker runs ``simulated_executor``, which sleeps briefly and echoes one row per
work item.
"""
import asyncio
import importlib
import os
import random
from typing import Any, Dict, List, Optional

from .config import TESTING
from .job_processor import BatchExecutor
from .schemas import Batch


async def simulated_executor(batch: Batch) -> List[Dict[str, Any]]:
    work_time = random.uniform(0.01, 0.1) if TESTING else random.uniform(0.1, 1.0)
    await asyncio.sleep(work_time)
    return [
        {"name": item, "timeRangeDays": batch.job_params.time_range_days, "batchIndex": batch.batch_index}
        for item in batch.work_items
    ]


def load_executor(path: Optional[str] = None) -> BatchExecutor:
    """Resolve ``module:function``; falls back to ``simulated_executor``."""
    path = path or os.getenv("BATCH_EXECUTOR")
    if not path:
        return simulated_executor
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"BATCH_EXECUTOR must look like 'module:function', got {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)
