"""Payout background tasks package"""
