"""
Project-wide immutable parameters for the CRX7 lottery.

These values define the public rules of a round.
Changing them changes eligibility or payouts and MUST be publicly announced.
"""

# Token mint (MAINNET), overridable with TOKEN_MINT_ADDRESS
TOKEN_MINT = "9NrkmoqwF1rBjsfKZvn7ngCy6zqvb8A6A5RfTvR2pump"

# Public exclusion list (committed to repo)
EXCLUDED_WALLETS_FILE = "excluded_wallets.mainnet.txt"

# Pump.fun tokens use 6 decimals
TOKEN_DECIMALS = 6

# Minimum balance to qualify (raw units)
MIN_RAW_BALANCE = 1 * (10**TOKEN_DECIMALS)  # 1 token in raw units (6 decimals)

# SOL payouts use 9 decimals
SOL_DECIMALS = 9
LAMPORTS_PER_SOL = 10**SOL_DECIMALS

# Round shape
MAX_DRAWS = 7
CANDIDATES_PER_DRAW = 7

# Only the spinning stage auto-advances
SPIN_DURATION_S = 4.0

# Default split of the prize pool
WINNERS_PERCENTAGE = 50
HOLDING_PERCENTAGE = 40
CHARITY_PERCENTAGE = 10

# Production payout wallets
HOLDING_WALLET = "EgFrJidrBi89nXA8qbBnZ1PMWUPRunX8bA7CWJFhbdEt"
CHARITY_WALLET = "3ebPj68nRbKQwpRUoHRdZypxKb6b5SHL5vYmAuqf9Bo8"

# Distribution retries after the first attempt
MAX_DISTRIBUTION_RETRIES = 3

# Fallback compute-unit price when the estimator is unavailable (micro-lamports)
MIN_PRIORITY_FEE = 1

# Network-level resubmission inside a single sendTransaction
MAX_SEND_RETRIES = 3

CONFIRM_TIMEOUT_S = 60.0

# Left in the payer wallet for transaction fees (0.1 SOL)
FEE_RESERVE_LAMPORTS = LAMPORTS_PER_SOL // 10
