"""Prompt execution engine.

  store.py        durable execution records (sole source of truth for state)
  dispatcher.py   prompts x active providers, rolling window, per-job pipeline
  broadcaster.py  per-business fan-out of live execution events
  runner.py       process-owned work queue the API submits runs to
"""
