"""
Couch Link - Pair a phone with your desktop over the local network

The desktop advertises itself with mDNS, discovers peers advertising the
same service, and accepts remote-control commands from a paired phone
over a small TCP command channel.

Features:
- mDNS advertisement with reliable goodbye on shutdown
- mDNS discovery of peer devices
- Presentation and cursor commands via xdotool
- Local control API for a desktop UI

Usage:
    couch-link start      # Run the host
    couch-link stop       # Stop the host
    couch-link status     # Check host status
    couch-link discover   # List peers on the network
    couch-link ip         # Show advertisable addresses
"""

__version__ = "1.0.0"
__author__ = "Couch Link"
