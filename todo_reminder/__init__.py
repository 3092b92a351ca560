"""
TODO Reminder

Finds marker comments in a git working tree, attributes each one to the
author who introduced it, and reports them through Feishu (Lark) messages
or Bitable records.
"""

__version__ = "1.0.0"
