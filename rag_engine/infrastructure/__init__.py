"""
===============================================================================
CRC CARD: infrastructure/__init__.py
===============================================================================
Module: infrastructure (adapters)

Responsibilities:
  - Host the concrete adapters behind the domain ports
    (chunk stores, provider clients, caches, tokenizers, prompts, analytics).

Policy:
  - No re-exports here; import from the subpackage that owns the adapter.
  - The composition root (container.py) is the only caller wiring them.
===============================================================================
"""
