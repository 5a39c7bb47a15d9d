from risk_intel.db.repo.events_repo import EventsRepo
from risk_intel.db.repo.runs_repo import RunsRepo
from risk_intel.db.repo.sources_repo import SourcesRepo

__all__ = ["EventsRepo", "RunsRepo", "SourcesRepo"]
