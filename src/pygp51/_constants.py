"""Internal constants shared across the library."""

BASE_URL = "https://www.gps51.com"
USER_AGENT = "pygp51/1.0"

#: ``status`` value GP51 uses for success; anything else carries a ``cause``.
STATUS_OK = 0

#: Local session lifetime. GP51 does not return an expiry with the token.
SESSION_TTL_SECONDS: float = 23 * 3600

#: A device counts as online when it reported within this window.
ONLINE_WINDOW_SECONDS: float = 10 * 60

# ------------------------------------------------------------------
# Supabase tables / RPCs
# ------------------------------------------------------------------

SESSIONS_TABLE = "gp51_sessions"
DEVICES_TABLE = "gp51_devices"
LIVE_POSITIONS_TABLE = "live_positions"
VEHICLES_TABLE = "vehicles"
USERS_TABLE = "envio_users"
UPSERT_SESSION_RPC = "upsert_gp51_session"

# ------------------------------------------------------------------
# Vendor device status codes
# ------------------------------------------------------------------

DEVICE_STATUS_TEXT: dict[int, str] = {
    1: "Normal",
    2: "Trial",
    3: "Disabled",
    4: "Service Fee Overdue",
    5: "Time Expired",
}


def device_status_text(code: int | None) -> str:
    """Human readable text for a GP51 device status code."""
    if not code:
        return "Unknown"
    return DEVICE_STATUS_TEXT.get(code, f"Status {code}")
