"""Library Lending - Core Application Package

This package contains the core lending modules including:
- Storage layer and transactional scopes (database.py, locks.py)
- Data models (models.py)
- Inventory ledger and loan records (ledger.py, loans.py)
- Lending engine and cascade handling (engine.py, cascade.py)
- Catalog, users and statistics (catalog.py, users.py, stats.py)
- Library facade wiring everything together (library.py)
"""
