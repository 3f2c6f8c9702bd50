"""
Agent chat app.

Provides:
- Gemini streaming chat grounded on the agent's File Search store
- Agent system prompts
- Citation recovery from grounding metadata
"""
