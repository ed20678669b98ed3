"""
Higher-level methods to drive service lifecycles across the host.

Each public function in this module should:

- perform a complete task, as needed by a script or lifecycle step
- avoid non-idempotent calls unless required by a prior state change
- create and manage contexts for any resources needed by plumbing
"""
