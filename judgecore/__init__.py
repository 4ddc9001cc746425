"""Submission judging engine for an online judge.

Compiles submitted source code once, runs it against a problem's
testcases under resource limits, compares the output and persists one
terminal verdict per judging attempt.
"""
