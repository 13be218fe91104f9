"""Deliverables of a completed preprocessing session."""

from .script import ScriptGenerator, ScriptGenerationOptions
from .report import export_report
from .deliverables import DeliverableGenerator, DeliverableManifest, export_metadata

__all__ = [
    'ScriptGenerator', 'ScriptGenerationOptions',
    'export_report',
    'DeliverableGenerator', 'DeliverableManifest', 'export_metadata'
]
