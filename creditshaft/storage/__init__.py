"""Loan store implementations."""
from .json_file import JsonFileLoanStore
from .memory import InMemoryLoanStore, credit_summary

__all__ = ["InMemoryLoanStore", "JsonFileLoanStore", "credit_summary"]
