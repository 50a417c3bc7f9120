"""Library App - helper utilities

- validators.py: input validation for users, books and loan requests
- ui_helpers.py: CLI output modes (plain, json, rich)
"""
