"""Worker process supervision.

- ProcessSupervisor: start, stop, restart and observe worker processes
- HealthProber: readiness polling and the raw port-free probe
- ConfigSynchronizer: build and push a worker's configuration document
- Port reclaimers: force-kill whatever owns a port
"""
