"""Agent core -- the conversation engine shared by every surface.

Module Overview
---------------

**models.py**
    Messages, tool calls and results, stream events, AgentConfig.

**errors.py**
    The error taxonomy (``kind`` + ``retryable``) every layer speaks.

**cancellation.py**
    CancellationToken threaded through all awaits, and the
    CancellationController mapping session/response ids to tokens.

**event_bus.py**
    Per-conversation ordered event log with bounded per-subscriber buffers.

**provider.py**
    Provider registry and the streaming ProviderGateway (OpenAI-compatible).

**tool_executor.py**
    Runs tool calls concurrently with timeouts; exactly one result per call.

**conversation.py**
    The turn state machine: model round-trips, tool dispatch, turn budget,
    retries, cancellation and termination.

**runtime.py**
    AgentRuntime: builds Conversations with their provider, tool registry
    copy and attached MCP servers.

**trace.py**
    JSON traces for chaining headless runs.

Architecture
------------
Surfaces (HTTP adapters, terminal, pipes) never touch conversation state
directly: they submit turns and read events from the bus. The conversation
is the only writer of its message log.
"""
