# powerlineapp/conf.py
# ----------------------------------------------------------
# Engine configuration, read from settings.POWERLINE
# ----------------------------------------------------------
from decimal import Decimal

from django.conf import settings

DEFAULTS = {
    "ROOT_NODE_ID": "PL",
    "CYCLE_VOLUME": "500",
    "COMMISSION_PER_CYCLE": "50.00",
    "MAX_CYCLES_PER_WINDOW": None,
    "QUALIFICATION_WINDOW": "daily",
    "PLACEMENT_MAX_ATTEMPTS": 5,
    "MAX_POSITIONS": None,
    "MAX_DEPTH": None,
    "BALANCE_ALERT_THRESHOLD": 1000,
    "SWEEP_COOLDOWN_MINUTES": 5,
}

WINDOWS = ("daily", "weekly", None)


def get_setting(name):
    """
    Read one engine setting. Looked up on every call so that
    override_settings(POWERLINE=...) is honoured.
    """
    overrides = getattr(settings, "POWERLINE", None) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]


def cycle_volume() -> Decimal:
    value = Decimal(str(get_setting("CYCLE_VOLUME")))
    if value <= 0:
        raise ValueError("POWERLINE['CYCLE_VOLUME'] must be positive")
    return value


def commission_per_cycle() -> Decimal:
    return Decimal(str(get_setting("COMMISSION_PER_CYCLE"))).quantize(Decimal("0.01"))


def qualification_window():
    window = get_setting("QUALIFICATION_WINDOW")
    # env values are strings: "" or "none" select the per-evaluation cap
    if isinstance(window, str):
        window = window.strip().lower()
        if window in ("", "none"):
            window = None
    if window not in WINDOWS:
        raise ValueError(f"Unknown POWERLINE['QUALIFICATION_WINDOW']: {window!r}")
    return window
