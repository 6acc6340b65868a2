"""Workflow-scoped logging helpers.

Every record carries a `workflow_id` attribute so the shared format string can
render it; records logged outside a workflow show `system`.
"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [workflow_id=%(workflow_id)s] %(name)s: %(message)s"


class WorkflowIdFilter(logging.Filter):
    """Ensure every log record has a workflow_id attribute."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "workflow_id"):
            record.workflow_id = "system"
        return True


def configure_logging(level: str | int = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    workflow_filter = WorkflowIdFilter()
    for handler in root_logger.handlers:
        if not any(isinstance(existing, WorkflowIdFilter) for existing in handler.filters):
            handler.addFilter(workflow_filter)


__all__ = ["LOG_FORMAT", "WorkflowIdFilter", "configure_logging"]
