"""PDL roadmap tracker - core package."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__all__ = [
    "BroadcastHub",
    "LegacyAdapter",
    "PDLService",
    "Project",
    "ProjectJournal",
    "ProjectTracker",
    "RoadmapEngine",
    "StoragePort",
]
