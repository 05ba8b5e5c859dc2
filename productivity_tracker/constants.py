"""
Constants for collections, defaults and report thresholds.
"""
from __future__ import annotations

# Document store collections
COLLECTION_TASKS = "tasks"
COLLECTION_DAILY_ACTIVITIES = "daily_activities"
COLLECTION_PRODUCTIVITY_SUMMARIES = "productivity_summaries"

# Defaults (overridable through Settings)
DEFAULT_DB_PATH = "data/productivity.db"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_RECURRENCE_HORIZON_DAYS = 30
DEFAULT_CLEANUP_RETENTION_DAYS = 30
DEFAULT_REMINDER_LOOKAHEAD_MINUTES = 15
DEFAULT_ROLLUP_LIST_LIMIT = 30
DEFAULT_TRENDS_DAYS = 30
DEFAULT_HEATMAP_DAYS = 365

# Grouping fallbacks
NO_PROJECT_KEY = "no-project"
NO_CATEGORY_KEY = "other"

# Heatmap intensity: (upper bound in hours, level); anything above the last bound is level 5
HEATMAP_INTENSITY_THRESHOLDS = (
    (1.0, 1),
    (3.0, 2),
    (5.0, 3),
    (8.0, 4),
)
HEATMAP_MAX_INTENSITY = 5
