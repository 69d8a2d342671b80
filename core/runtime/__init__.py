"""
Project runtime package.

Import concrete functionality from explicit submodules:
- `core.runtime.config` for configuration dataclasses
- `core.runtime.errors` for the bootstrap error taxonomy
- `core.runtime.paths` for filesystem preparation
- `core.runtime.bootstrap` for startup helpers
- `core.runtime.context` for runtime context definitions
- `core.runtime.listeners` for the HTTP/TLS listener supervisor
- `core.runtime.shutdown` for signal-driven cleanup
- `core.runtime.server` for the process entry point
"""

__all__: list[str] = []
