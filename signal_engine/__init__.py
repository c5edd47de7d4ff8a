"""
signal_engine
=============

Decision core of the digit bot: turns a stream of price ticks into
binary-option trade intents and books their settlements.

Data-flow per tick
------------------
tick → signal digit → (open leg? poll settlement) → session P/L →
ladder / mode update → next trade intent.

Modules
-------
rules.py     – config, value types, broker errors, signal evaluator
ladder.py    – martingale stake ladder + PRIMARY/RECOVERY controller
session.py   – session P/L, TP/SL thresholds, cooldown
monitor.py   – outstanding legs + settlement polling
events.py    – typed events and sinks (log / memory / fan-out)
engine.py    – TradeEngine, the tick-driven state machine
"""
