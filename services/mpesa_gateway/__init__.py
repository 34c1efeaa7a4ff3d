"""Simulated M-Pesa STK push gateway."""
