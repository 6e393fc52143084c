"""BookWize - Services Package

This package contains the circulation services and hosted integrations:
- Catalog inventory and copy counts
- Membership registry
- Circulation ledger and fine accrual
- Circulation workflows (issue, return, renew, reservations)
- Supabase record store and HTTP client abstraction
"""
