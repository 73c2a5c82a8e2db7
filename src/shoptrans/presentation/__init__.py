# src/shoptrans/presentation/__init__.py
