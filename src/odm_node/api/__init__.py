"""HTTP layer: task intake and FastAPI routes."""

from odm_node.api.intake import IntakeRequest, TaskIntake, UploadedFile

__all__ = ["IntakeRequest", "TaskIntake", "UploadedFile"]
