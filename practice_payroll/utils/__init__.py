"""
Practice Payroll - Utilities
"""
