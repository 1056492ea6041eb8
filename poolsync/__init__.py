"""Pool Sync service.

Keeps a load-balancer pool's membership in line with a service list held in
an etcd registry, and answers audit passes without double-triggering.
"""
