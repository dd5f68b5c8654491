"""
StoreSync HTTP API
Configuration, run control and webhook ingress routers
"""
