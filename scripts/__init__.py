"""
Maintenance Scripts

Available scripts:
    - validate_definition.py: Checks a process definition JSON file

Usage:
    python -m scripts.validate_definition path/to/definition.json
"""
