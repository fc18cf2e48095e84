"""Data model — persisted records and the enums they share."""

from dokodemo.model.records import (
    AutoModeConfig,
    AutoModeState,
    CommandShortcut,
    DiffSpec,
    DiffType,
    HistoryRecord,
    OutputKind,
    OutputLine,
    Provider,
    ReviewServer,
    ReviewStatus,
    SessionKind,
    SessionRecord,
    gen_id,
)

__all__ = [
    "AutoModeConfig",
    "AutoModeState",
    "CommandShortcut",
    "DiffSpec",
    "DiffType",
    "HistoryRecord",
    "OutputKind",
    "OutputLine",
    "Provider",
    "ReviewServer",
    "ReviewStatus",
    "SessionKind",
    "SessionRecord",
    "gen_id",
]
