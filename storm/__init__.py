"""
Storm Control Plane

Provisions per-account identities on the storm tier (a secondary,
quota-limited storage tier behind an external provisioning service) and
coordinates content migration between the primary tier and storm.
Responsibilities:
- Admission control (role, enterprise flag, quota, bandrate)
- Storm account registry and per-enterprise registered count
- Remote/local synchronization for create, destroy, update, bulk update
- Two-phase transfer jobs completed by a remote callback
"""
