"""
Gateway - SOCKS5 interposition between the client under test and a topology
"""
from .relay import NetworkGateway, DialFailure

__all__ = ['NetworkGateway', 'DialFailure']
