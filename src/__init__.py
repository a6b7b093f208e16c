"""Shop Assistant: the chat orchestration service behind the store's chat widget.

Architecture Overview
=====================

Every ``POST /api/chat`` is one independent turn:

1. **Admission**: a fixed-window rate limiter keyed by session id (or
   client address) rejects bursts with HTTP 429.
2. **Identity**: the caller's Supabase session (cookie or bearer token) is
   verified against the auth server; anything that fails is anonymous.
3. **Orchestration**: a LangGraph StateGraph with two nodes:

   - **model**: Claude with the ten shop tools bound
   - **tools**: runs the round's tool calls through the ``ToolRegistry``

   Routing: model → (tool calls and rounds left?) → tools → model, capped
   at two follow-up rounds.
4. **Fallback**: no model key, or any model failure, and the whole turn is
   answered by deterministic regex rules instead.
5. **Persistence**: the last 20 messages plus analytics metadata are queued
   for a background writer; failures never reach the caller.

Key Design Decisions
--------------------
- **LLM**: Claude Haiku via ``langchain-anthropic``, bounded timeout.
- **Tools**: a closed ``ToolName`` enum; arguments validated with pydantic;
  dispatch turns every failure into a result the model can explain.
- **Backend**: Supabase PostgREST over httpx with exponential backoff
  retries (3 attempts) for timeouts and 5xx errors.
- **Dual Interface**: FastAPI server (production) + CLI chat loop
  (development/testing).

Package Structure
-----------------
- ``src/agent.py``: LangGraph graph and the ``Orchestrator``
- ``src/fallback.py``: rule-based responder and quick-reply heuristic
- ``src/config.py``: Centralized configuration from environment variables
- ``src/prompts.py``: System prompt builder
- ``src/models.py``: Shared domain types and UI artifacts
- ``src/server.py``: FastAPI application
- ``src/main.py``: CLI chat interface
- ``src/services/``: Backend client, auth, rate limiting, cache, metrics, persistence
- ``src/tools/``: Tool registry, commerce tools, store information
- ``src/api/``: FastAPI routes and Pydantic schemas
"""
