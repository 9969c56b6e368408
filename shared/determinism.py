"""Sampling settings per model role.

Every model call imports its parameters from here so generation and
healing stay reproducible across runs.  Generation keeps a little
variability to get varied test scenarios; healing is near-deterministic.
"""

GENERATION_ROLE = "generation"
HEALING_ROLE = "healing"

GENERATION_TEMPERATURE: float = 0.2
GENERATION_TOP_P: float = 0.9

HEALING_TEMPERATURE: float = 0.1
HEALING_TOP_P: float = 1.0  # some OpenAI-compatible backends reject top_p=0

MAX_TOKENS: int = 4096

# Spread into the chat-completions payload after the temperature.
TOP_P_BY_ROLE: dict[str, float] = {
    GENERATION_ROLE: GENERATION_TOP_P,
    HEALING_ROLE: HEALING_TOP_P,
}
