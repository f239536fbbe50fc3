"""
ConvAI voice bridge.

Relays voice-channel audio to an ElevenLabs Conversational AI agent and
plays the agent's replies back, with client tools executed locally.
"""

__version__ = "0.1.0"
