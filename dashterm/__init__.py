"""
DashTerm

Backend for a developer dashboard that drives many local shell sessions:
a layered command validation gate plus a session multiplexer over a single
shared transport.
"""

__version__ = "0.1.0"
