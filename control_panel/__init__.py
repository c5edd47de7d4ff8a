"""
control_panel
=============

Operator-facing REST API (FastAPI):

• Starts/stops an executor task in-process with a config posted by the
  web form (or defaults from the environment).
• Reports engine state, session P/L, balance and the recent event feed.
• Forwards free-form commands to the engine.
"""
