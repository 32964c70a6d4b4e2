"""Scheduling and control loop for unattended CLI-agent runs.

Why not a generic job scheduler?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The worker here is a single external CLI agent that mutates a shared
workspace (files, git history) non-transactionally, so there is exactly one
cycle in flight at any time. What the loop has to get right is not queuing
but control:

- Ranking eligible work from a hierarchical JSON task store and unblocking
  dependents as blockers complete.
- Inferring progress from the outside (git HEAD and store content hash),
  because the agent's exit status says little about whether work landed.
- Backing off and halting under repeated failure, with a last-good commit
  to restore the store from when the agent leaves it corrupted.
- Spending on expensive review passes adaptively, driven by a cheap local
  issue scan, with a hard ceiling for what that scan cannot see.

A broker-backed queue would add an operational dependency without covering
any of the above, so the loop is a plain synchronous driver over one JSON
file (see supervisor.py).
"""
