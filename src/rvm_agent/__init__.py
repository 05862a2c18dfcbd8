"""
RVM Agent
Cycle and session orchestration for a reverse vending machine
"""

__version__ = '1.0.0'
