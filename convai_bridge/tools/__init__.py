"""
Client tool system for the voice bridge.

Tools are registered per talk session and invoked by the agent through
client_tool_call events.
"""
