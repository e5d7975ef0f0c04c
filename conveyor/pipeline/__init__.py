"""Pipeline definitions and runs."""

from conveyor.pipeline.archive import RunArchive
from conveyor.pipeline.loader import (
    check_environments,
    load_definition,
    parse_definition,
    read_document,
)
from conveyor.pipeline.run import PipelineRun

__all__ = [
    "PipelineRun",
    "RunArchive",
    "check_environments",
    "load_definition",
    "parse_definition",
    "read_document",
]
