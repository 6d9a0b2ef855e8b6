"""
Store key helpers. Both backends use the same names so a memory snapshot and
a Redis keyspace read the same way.
"""

from datetime import date

from devradar.core.clock import week_start

# Languages tracked individually on the network heatmap; everything else is "other".
LANGUAGE_ALLOWLIST = frozenset({
    "javascript", "typescript", "python", "java", "csharp", "cpp", "c", "go",
    "rust", "ruby", "php", "swift", "kotlin", "scala", "html", "css", "scss",
    "less", "json", "yaml", "xml", "sql", "shell", "markdown", "vue", "react",
    "angular", "svelte", "dart", "r", "lua", "perl", "haskell", "elixir",
    "clojure", "fsharp", "ocaml",
})

NETWORK_COUNT_FIELD = "count"
NETWORK_LANGUAGE_PREFIX = "lang:"


def presence_key(user_id: str) -> str:
    return f"presence:{user_id}"


def presence_channel(user_id: str) -> str:
    return f"channel:presence:{user_id}"


def streak_key(user_id: str) -> str:
    return f"streak:{user_id}"


def daily_session_key(user_id: str, day: date) -> str:
    return f"session:{user_id}:{day.isoformat()}"


def weekly_leaderboard_key(metric: str, day: date) -> str:
    """Week rollover is by key: a new Monday starts an empty set."""
    return f"leaderboard:weekly:{metric}:{week_start(day).isoformat()}"


def network_key(minute: int) -> str:
    return f"network:{minute}"


def normalize_language(language: str) -> str:
    lang = language.strip().lower()
    return lang if lang in LANGUAGE_ALLOWLIST else "other"
