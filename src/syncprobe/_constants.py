"""Internal constants shared across the library."""

DEFAULT_ROOT_URL = "https://developer-api.nest.com"

#: Property the orchestrator mutates on every tick.
MONITORED_PROPERTY = "target_temperature_f"

# ------------------------------------------------------------------
# Target temperature wrap-around (°F)
# ------------------------------------------------------------------

WRAP_AT = 90
WRAP_TO = 50


def next_target_temperature(value: int) -> int:
    """Return the value written after *value*.

    ``value + 1``, except that reaching ``90`` wraps back to ``50``.
    Values outside 50-89 are incremented as-is.
    """
    new_value = value + 1
    if new_value == WRAP_AT:
        new_value = WRAP_TO
    return new_value
