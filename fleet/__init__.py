"""Fleet shim.

Daemon that keeps one application container per licensed instance alive:
 - reconciles licenses against the containers the runtime knows about
 - health checks, restarts and recovers instances (safe mode on repeated failure)
 - registers each instance with the control plane and sends metric heartbeats
 - relays instance requests over the established encrypted channel
"""
