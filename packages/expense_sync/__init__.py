"""expense_sync: turn bank SMS into categorized expenses.

Modules are imported directly (``expense_sync.sync``, ``expense_sync.cli``);
this package file stays empty so ``--help`` never pays for SDK imports.
"""
