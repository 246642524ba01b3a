"""entitygate: typed, validated entity operations for tool-calling clients.

Turns declarative entity metadata into independently callable query, get,
create, update and delete operations with synthesized input contracts.
"""

__version__ = "0.1.0"
