import os
from dataclasses import asdict

from google.adk.agents import Agent


def _ensure_gemini_key():
    if not os.environ.get("GEMINI_API_KEY") and os.environ.get("GOOGLE_API_KEY"):
        os.environ["GEMINI_API_KEY"] = os.environ["GOOGLE_API_KEY"]


def pool_defaults() -> dict:
    """ADK tool: return the device pool settings a capture run would use."""
    from agents.config import PoolConfig

    return {"platform": os.environ.get("PLATFORM", "ios"), **asdict(PoolConfig.from_env())}


def capture_app_screenshots(app_id: str) -> dict:
    """ADK tool: explore one installed app and capture store screenshots via main.run_one."""
    # Normalize API key naming between ADK and the Gemini client
    _ensure_gemini_key()

    import main  # existing entrypoint

    run_dir, result = main.run_one(app_id)
    return {
        "status": "completed",
        "run_directory": run_dir,
        "result": result,
    }


root_agent = Agent(
    name="app_screenshots_root_agent",
    model=os.environ.get("GEMINI_MODEL", "gemini-2.0-flash"),
    description=(
        "ADK orchestration agent for app-store screenshot capture. "
        "Delegates device leasing, UI exploration and capture to the "
        "exploration agent running on simulators or emulators."
    ),
    instruction=(
        "You capture app-store screenshots for mobile apps. When asked to capture an app, "
        "call capture_app_screenshots with its bundle id / package name and report the "
        "run directory, the number of screenshots and any notes. Use pool_defaults to "
        "answer questions about device capacity."
    ),
    tools=[capture_app_screenshots, pool_defaults],
)
