from tortoise import Tortoise
import os
from dotenv import load_dotenv

load_dotenv()

MODEL_MODULES = [
    "models.appointment",
    "models.call_log",
    "models.message",
]


def build_tortoise_config(db_url: str, with_aerich: bool = True) -> dict:
    modules = list(MODEL_MODULES)
    if with_aerich:
        modules.append("aerich.models")
    return {
        "connections": {"default": db_url},
        "apps": {
            "models": {
                "models": modules,
                "default_connection": "default",
            }
        },
        "use_tz": True,
        "timezone": "UTC",
    }


# read by aerich (see [tool.aerich] in pyproject.toml)
TORTOISE_CONFIG = build_tortoise_config(os.getenv("DATABASE_URL", "sqlite://db.sqlite3"))


async def init_db(db_url: str, generate_schemas: bool = False) -> None:
    await Tortoise.init(config=build_tortoise_config(db_url, with_aerich=False))
    if generate_schemas:
        await Tortoise.generate_schemas(safe=True)


async def close_db() -> None:
    await Tortoise.close_connections()
