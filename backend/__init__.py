"""
Swarm C2 backend.

Polls OpenSky per region, keeps the latest snapshot and tactical analysis
for each, and pushes both to subscribed WebSocket clients.
"""
