"""StoryForge: resilient client core for a children's creative-writing app.

Modules:
    core.py          StoryForge orchestrator
    cache.py         Bounded FIFO response cache
    retry.py         Exponential backoff with jitter
    state.py         Application state, subscribers, undo/redo
    reporter.py      Error classification, logging, forwarding
    library.py       Stories, illustrations, drafts, progress
    storage/         Flat and collection persistence backends
    generators/      Remote text/image generation clients
"""
