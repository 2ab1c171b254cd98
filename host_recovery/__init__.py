"""Escalating recovery of an unresponsive host: IPMI, then PDU outlet power cycle."""

__version__ = '0.1.0'
