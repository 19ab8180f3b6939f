"""
Creator Payouts HTTP and background-job surfaces
"""
