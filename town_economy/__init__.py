"""
Town Economy Ledger

Approval-gated transaction engine for a classroom economy: student accounts,
teacher-reviewed transfers, loans, treasury salaries with progressive tax,
and land purchases. All money uses Decimal and every movement is logged.
"""

__version__ = "1.0.0"
