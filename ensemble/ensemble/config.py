"""Configuration for Ensemble."""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class BackendConfig:
    """Generative backend connection settings."""
    api_key: str = ""
    base_url: Optional[str] = None
    model: str = "gpt-4"
    temperature: float = 0.7
    max_tokens: int = 1000
    timeout: float = 30.0  # seconds


@dataclass
class RateLimitConfig:
    requests_per_minute: int = 60
    requests_per_hour: int = 1000


@dataclass
class BudgetConfig:
    daily_limit: Optional[float] = 10.0
    monthly_limit: Optional[float] = 200.0
    # Budgets only alert unless this is switched on
    enforce: bool = False


@dataclass
class ModelRates:
    """Cost per 1K tokens."""
    input: float
    output: float


def default_cost_rates() -> dict[str, ModelRates]:
    return {
        "default": ModelRates(input=0.03, output=0.06),
        "gpt-4": ModelRates(input=0.03, output=0.06),
        "gpt-4-turbo": ModelRates(input=0.01, output=0.03),
        "gpt-4o": ModelRates(input=0.0025, output=0.01),
        "gpt-4o-mini": ModelRates(input=0.00015, output=0.0006),
        "gpt-3.5-turbo": ModelRates(input=0.0005, output=0.0015),
    }


@dataclass
class EnsembleConfig:
    """Main configuration for Ensemble."""

    # State directory
    state_dir: str = ".ensemble"

    backend: BackendConfig = field(default_factory=BackendConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    cost_rates: dict[str, ModelRates] = field(default_factory=default_cost_rates)

    @classmethod
    def from_dict(cls, data: dict) -> "EnsembleConfig":
        config = cls()
        if "state_dir" in data:
            config.state_dir = data["state_dir"]
        if "backend" in data:
            config.backend = BackendConfig(**data["backend"])
        if "rate_limit" in data:
            config.rate_limit = RateLimitConfig(**data["rate_limit"])
        if "budget" in data:
            config.budget = BudgetConfig(**data["budget"])
        if "cost_rates" in data:
            config.cost_rates = {
                family: ModelRates(**rates) for family, rates in data["cost_rates"].items()
            }
        return config

    @classmethod
    def load(cls, path: str = "ensemble.json") -> "EnsembleConfig":
        """Load configuration from file, then apply environment overrides."""
        config_path = Path(path)
        if config_path.exists():
            with open(config_path) as f:
                config = cls.from_dict(json.load(f))
        else:
            config = cls()
        config.apply_env()
        return config

    def apply_env(self, environ: Optional[dict] = None):
        """Override settings from ENSEMBLE_* and OPENAI_API_KEY variables."""
        env = os.environ if environ is None else environ

        if env.get("OPENAI_API_KEY"):
            self.backend.api_key = env["OPENAI_API_KEY"]
        if env.get("ENSEMBLE_BASE_URL"):
            self.backend.base_url = env["ENSEMBLE_BASE_URL"]
        if env.get("ENSEMBLE_MODEL"):
            self.backend.model = env["ENSEMBLE_MODEL"]
        if env.get("ENSEMBLE_TEMPERATURE"):
            self.backend.temperature = float(env["ENSEMBLE_TEMPERATURE"])
        if env.get("ENSEMBLE_MAX_TOKENS"):
            self.backend.max_tokens = int(env["ENSEMBLE_MAX_TOKENS"])
        if env.get("ENSEMBLE_TIMEOUT"):
            self.backend.timeout = float(env["ENSEMBLE_TIMEOUT"])
        if env.get("ENSEMBLE_REQUESTS_PER_MINUTE"):
            self.rate_limit.requests_per_minute = int(env["ENSEMBLE_REQUESTS_PER_MINUTE"])
        if env.get("ENSEMBLE_REQUESTS_PER_HOUR"):
            self.rate_limit.requests_per_hour = int(env["ENSEMBLE_REQUESTS_PER_HOUR"])
        if env.get("ENSEMBLE_DAILY_BUDGET"):
            self.budget.daily_limit = float(env["ENSEMBLE_DAILY_BUDGET"])
        if env.get("ENSEMBLE_MONTHLY_BUDGET"):
            self.budget.monthly_limit = float(env["ENSEMBLE_MONTHLY_BUDGET"])
        if env.get("ENSEMBLE_ENFORCE_BUDGETS"):
            self.budget.enforce = env["ENSEMBLE_ENFORCE_BUDGETS"].lower() in ("1", "true", "yes")
        if env.get("ENSEMBLE_STATE_DIR"):
            self.state_dir = env["ENSEMBLE_STATE_DIR"]

    def save(self, path: str = "ensemble.json"):
        """Save configuration to file. The API key is never written."""
        data = asdict(self)
        data["backend"]["api_key"] = ""
        with open(path, "w") as f:
            json.dump(data, f, indent=2)


def generate_mcp_config() -> dict:
    """Generate MCP configuration for an MCP-capable client."""
    return {
        "mcpServers": {
            "ensemble": {
                "command": "python",
                "args": ["-m", "ensemble.server"],
                "env": {
                    "ENSEMBLE_STATE_DIR": ".ensemble",
                    "OPENAI_API_KEY": "<your key>"
                }
            }
        }
    }


def main():
    """CLI for configuration management."""
    import asyncio
    import sys

    if "--setup" in sys.argv:
        config = generate_mcp_config()
        print("\nAdd this to your MCP client settings:\n")
        print(json.dumps(config, indent=2))
        print("\n")
        EnsembleConfig().save()
        print("Created ensemble.json with default settings")

    elif "--check" in sys.argv:
        from .backend import GenerativeBackend
        from .logs import setup_logging

        setup_logging()
        config = EnsembleConfig.load()

        async def check() -> bool:
            backend = GenerativeBackend(config)
            try:
                return await backend.health_check()
            finally:
                await backend.close()

        healthy = asyncio.run(check())
        status = "✅ Healthy" if healthy else "❌ Unreachable or unexpected reply"
        print(f"\nBackend ({config.backend.model}): {status}\n")

    else:
        print("""
Ensemble - Agent Orchestration and Cost Governance

Usage:
  python -m ensemble.config --setup    Generate MCP configuration
  python -m ensemble.config --check    Probe the generative backend
""")


if __name__ == "__main__":
    main()
