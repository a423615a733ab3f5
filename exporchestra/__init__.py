"""
exporchestra - Orchestration runtime for experience playbooks.

Turns one high-level intent ("launch an event") into a linked bundle of
artifacts, built as idempotent, retryable steps against an artifact store.
"""

__version__ = "0.1.0"


__all__ = ["ExporchestraConfig", "load_config", "get_exporchestra_home"]

from .config import ExporchestraConfig, load_config, get_exporchestra_home
