"""
constants.py – single source of hard-coded names
"""

# Deriv websocket endpoint (app_id appended at connect time)
DERIV_WS_URL = "wss://ws.derivws.com/websockets/v3?app_id={}"
DEFAULT_APP_ID = "115442"
DEFAULT_SYMBOL = "R_100"          # volatility 100 index, 2 decimals

# Contract types traded by the engine
CONTRACT_ODD   = "DIGITODD"
CONTRACT_OVER  = "DIGITOVER"
CONTRACT_UNDER = "DIGITUNDER"

RECOVERY_OVER_BARRIER  = 5
RECOVERY_UNDER_BARRIER = 6

HISTORY_LEN = 5                   # trailing signal digits kept per engine
EVENT_BUFFER = 100                # events kept in memory for the panel

# Redis keys / templates
KEY_EVENTS          = "live:events"
KEY_SESSIONS_CLOSED = "live:sessions:closed"
KEY_HEARTBEAT       = "heartbeat:{}"        # service-specific
EVENTS_MAX_LEN      = 1000
