"""
vc_pipeline — verifiable credential issuance for agricultural quality certificates.

Queues issuance jobs for inspected batches, issues W3C credentials through a
provider in a bounded worker pool, verifies credentials however they are
presented, and keeps certificates in step with provider callbacks and an
append-only revocation ledger.

Built on the Railway-Oriented Programming (ROP) framework for
explicit, composable, functional error handling.
"""

__version__ = "0.1.0"
