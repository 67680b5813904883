"""
Signal Oracle: Polymarket signal synthesis and risk-sizing engine.

Layers:
  polymarket/   Pure API clients (Gamma, CLOB) and snapshot models
  estimators/   Pluggable probability estimators (LLM via OpenRouter)
  core/         Selection, probability synthesis, sizing, dampening, gating
  bot/          Config, persistence, market provider, scheduler and CLI runner
"""
