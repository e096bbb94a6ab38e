"""
Conformance Test Suite

Properties every run of the matching engine must keep, whatever the
sequence of operations:
1. conservation.py - Quantities move between lots, legs and ledgers without
   being created or destroyed
2. atomicity.py - A rejected operation leaves ledgers and store untouched

These tests use hypothesis for property-based testing.
"""
