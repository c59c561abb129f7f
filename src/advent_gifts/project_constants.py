"""
Season-wide immutable parameters for the advent gift distribution.

These values define the public rules of the commitment and the payouts.
Changing them changes every leaf hash and MUST be publicly announced.
"""

# One pre-committed gift per advent day
NUM_DAYS = 24
HOURS_PER_DAY = 24

# Commitment hashing
HASH_ALGORITHM = "sha256"
CANONICAL_FORM = "JSON with recursively sorted keys, compact separators, UTF-8"
SEASON = "2025-season-1"

# Native SOL amounts are lamports
LAMPORTS_PER_SOL = 10**9

# Fixed-width amount arithmetic
U64_MAX = 2**64 - 1
U128_MAX = 2**128 - 1

# Max transfers packed into one transaction
TRANSFER_BATCH_SIZE = 5

# Fields never fed into a leaf hash (they are derived from the commitment)
COMMITMENT_FIELDS = ("hash", "commitment_hash", "salt", "leaf", "proof")
