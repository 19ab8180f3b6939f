"""Payout API routers"""
