"""
shared – helpers imported by every service of the digit bot
-----------------------------------------------------------
Modules
-------
config.py         → loads `.env` once per process, typed env lookups
logging.py        → consistent JSON/stdout logger
constants.py      → Redis keys, contract types, Deriv endpoint
redis_client.py   → lazy Redis singleton, heartbeat, Redis event sink
"""
