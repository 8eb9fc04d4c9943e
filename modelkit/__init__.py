"""modelkit - persistence, REST and list-presentation helpers.

Layers:
- stores: SQLite store manager (interactive/writer context pair)
- services: request descriptors, backend client, list projection
- schemas: structured error payloads
"""

import logging

logging.getLogger("modelkit").addHandler(logging.NullHandler())

__version__ = "0.1.0"
