"""
CLI helper functions and utilities.
"""

from .display import print_changes, servers_table, service_table, status_text
from .errors import handle_errors, exit_code_for

__all__ = [
    'handle_errors',
    'exit_code_for',
    'print_changes',
    'servers_table',
    'service_table',
    'status_text',
]
