"""Plan execution engine: step graph, immutable execution context and scheduler.

Steps are scheduled cooperatively on one asyncio loop. Each step's prompt is
rendered from the current ``ExecutionContext`` through the context assembler,
sent to an agent adapter, and the result is folded into a new context value.
"""
