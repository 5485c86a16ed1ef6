"""
Test Suite Initialization

tasktree test configuration.
"""
