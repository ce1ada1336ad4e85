"""
Serial Question Queue — decouples long polling from question processing.

- The poll loop PUBLISHES received questions, deduplicated by id
- A single worker CONSUMES them one at a time, in arrival order
- Backed by an in-process asyncio.Queue (state is not persisted)
"""
