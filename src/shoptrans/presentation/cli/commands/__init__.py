# src/shoptrans/presentation/cli/commands/__init__.py
