"""
Models package — re-exports Base and all models.

When adding a new model:
    1. Create `deployflow/db/models/<table_name>.py`
    2. Import it here
"""

from deployflow.db.models.base import Base
from deployflow.db.models.pipeline_execution import PipelineExecutionRecord
from deployflow.db.models.pipeline_step_log import PipelineStepLog

__all__ = [
    "Base",
    "PipelineExecutionRecord",
    "PipelineStepLog",
]
