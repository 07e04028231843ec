"""
SACCO Core

Financial ledger and workflow engine for a member-owned savings and credit
cooperative: periods, savings, loans, interest distribution and shareouts.
All monetary arithmetic uses Decimal through the Money type.
"""

__version__ = "1.0.0"
