"""BookWize - Library Circulation Package

This package contains the circulation application modules including:
- API endpoints (api.py)
- CLI interface (main.py)
- Data models (book.py, models.py)
- Record stores (store.py, database.py)
- Configuration and errors (config.py, errors.py)
"""

__version__ = "1.0.0"
