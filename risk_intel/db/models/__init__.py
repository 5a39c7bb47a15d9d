from risk_intel.db.models.intel import (
    ExternalEvent,
    FeedSource,
    IntelligenceAlert,
    KeywordEntry,
    OrgSettings,
    RegisterRisk,
    ScanRun,
    SourceFetchEvent,
)

__all__ = [
    "FeedSource",
    "KeywordEntry",
    "OrgSettings",
    "ExternalEvent",
    "IntelligenceAlert",
    "ScanRun",
    "SourceFetchEvent",
    "RegisterRisk",
]
