"""
hostfw - Declarative host firewall rule manager.

Keeps a durable catalogue of port and address rules and reconciles it
with the host's live firewall (iptables, firewalld or nftables).
"""

__version__ = "1.0.0"
__author__ = "hostfw maintainers"
