"""
Top-level package for the Discord Gemini bot.

This package hosts:
- config loading, validation and the immutable PipelineSettings
- the prompt pipeline: context budgets, guild key/model resolution,
  the resilient Gemini client and the mention orchestrator
- Discord client, event handlers and slash commands
"""
