"""
deriv_executor
==============

Bridges the signal engine with a Deriv account.

* Streams ticks for one synthetic symbol over the Deriv websocket API.
* Places the engine's trade intents (proposal → buy) and answers its
  settlement polls via `proposal_open_contract`.
* DRY_RUN=1 swaps the broker for `PaperBroker`, which settles contracts
  against the live tick stream without touching the account.

Modules
-------
deriv_client.py  – websocket client (ticks, buy, contract status)
paper_broker.py  – simulated fills/settlements for dry runs
executor.py      – main loop: tick stream → engine (entry-point)
"""
