"""
Core module for tabpilot.

Thread dispatch, configuration, logging and proxy handling shared by the
browser layer.

Submodules:
    config: Application settings (``AppSettings``) via Pydantic.
    dispatch: ``LoopThread`` / ``OwnerDispatcher`` loop threads and ``Event``.
    proxy_manager: ``ProxyConfig`` parsing and per-view proxy switching.
    proxy_pool: Proxy list rotation with health scoring and persistence.
    logging_setup: Compressed rotating file + safe console logging.
    utils: Corruption-safe JSON read/write and directory helpers.
"""
