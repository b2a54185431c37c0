"""
Configuration constants for the visibility tracker.

Shared defaults live here so engine modules don't import each other just to
read a number.
"""

# Maximum prompt length accepted by provider adapters
# ~25k tokens at 4 chars/token average
MAX_PROMPT_LENGTH = 100_000

# Prompts per batch; with four providers a batch makes at most 20 calls
PROMPT_BATCH_SIZE = 5

# Deadline for a single (prompt, provider) call, in seconds
PROVIDER_CALL_TIMEOUT = 30.0

# Wall-clock ceiling the CLI applies to a whole run, in seconds
MAX_RUN_SECONDS = 300.0

# Prefix written into the response of a failed (prompt, provider) result
ERROR_RESPONSE_PREFIX = "Error: "

# Recurrence values accepted for a tracking config
INTERVALS = ("daily", "weekly", "monthly", "on_demand")

# Monthly prompt allowances
TRIAL_PROMPTS_PER_MONTH = 25
PLAN_PROMPTS_PER_MONTH = {
    "starter": 50,
    "team": 100,
    "professional": 300,
}

# Countries a provider answer can be localized to (proxy env: PROXY_URL_<CODE>)
COUNTRIES = {
    "DE": "Germany",
    "CH": "Switzerland",
    "AT": "Austria",
    "UK": "United Kingdom",
    "US": "United States",
    "ES": "Spain",
    "FR": "France",
    "NL": "Netherlands",
}
