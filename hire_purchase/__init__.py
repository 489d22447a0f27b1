"""
Hire-Purchase Installment & Payment Orchestration Engine

Owns contract amortization schedules, applies mobile-money payments to
installments, drives automatic retries of failed charges and manages
direct-debit mandates. All monetary values use Decimal.
"""

__version__ = "1.0.0"
