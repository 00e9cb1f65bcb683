import os
from dataclasses import dataclass

from dotenv import load_dotenv


def load_environment() -> str:
    """Load the .env file for BASEREPO_ENV and return the environment name."""
    env = os.environ.get("BASEREPO_ENV", "development").lower()
    env_file = f".env.{env}"
    if os.path.exists(env_file):
        load_dotenv(env_file)
    else:
        # Fall back to the default .env file
        load_dotenv()
    return env


@dataclass
class Config:
    environment: str
    database_url: str
    insert_chunk_size: int

    @classmethod
    def from_env(cls) -> "Config":
        environment = load_environment()
        return cls(
            environment=environment,
            database_url=os.environ.get(
                "DATABASE_URL", "postgresql://localhost:5432/baserepo"
            ),
            insert_chunk_size=int(os.environ.get("BASEREPO_INSERT_CHUNK_SIZE", "500")),
        )


config = Config.from_env()
