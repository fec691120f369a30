"""
Loremaster - session orchestration core for an AI-assisted tabletop-RPG game master.

This package sits between real-time game clients (over a WebSocket connection)
and an LLM provider. Simultaneous player actions are batched into one request,
and the LLM's tool calls are routed back to the connected game client.
"""

__version__ = "0.1.0"
