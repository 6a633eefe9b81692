import re
import threading
import time
from typing import Dict, List, Optional

import google.generativeai as genai
from google.api_core.exceptions import ResourceExhausted, DeadlineExceeded, NotFound


class ModelCallError(RuntimeError):
    """The model call failed after retries (or failed in a way retries can't fix)."""


def _qualified(model_name: str) -> str:
    # The SDK accepts "models/<name>"
    if not model_name.startswith("models/"):
        return f"models/{model_name}"
    return model_name


class GeminiLLM:
    """Thin multimodal LLM wrapper with:
    - RPM throttling shared by every model this client talks to (avoid 429s)
    - bounded retries with retry-after handling
    - nicer error messages for daily caps

    No response cache: exploration decisions depend on the live screen, so
    replaying an old answer would drive the device blind.
    """

    def __init__(self, api_key: str, model_name: str = "gemini-2.0-flash", rpm_limit: int = 15,
                 timeout_s: int = 45, max_attempts: int = 4):
        genai.configure(api_key=api_key)

        self.model_name = _qualified(model_name)
        self.rpm_limit = max(1, int(rpm_limit))
        self.timeout_s = timeout_s
        self.max_attempts = max(1, int(max_attempts))

        self._last_call_ts = 0.0
        self._throttle_lock = threading.Lock()

    def _throttle(self):
        # Simple RPM throttle (requests per minute)
        min_interval = 60.0 / float(self.rpm_limit)
        with self._throttle_lock:
            now = time.time()
            dt = now - self._last_call_ts
            if dt < min_interval:
                time.sleep(min_interval - dt)
            self._last_call_ts = time.time()

    @staticmethod
    def _retry_after_seconds(msg: str) -> Optional[float]:
        # Gemini error text often includes:
        # "Please retry in 39.264860182s."
        m = re.search(r"retry in ([0-9]+(?:\.[0-9]+)?)s", msg, re.IGNORECASE)
        if not m:
            return None
        try:
            return float(m.group(1))
        except ValueError:
            return None

    @staticmethod
    def _is_daily_cap(msg: str) -> bool:
        # Daily cap errors usually mention "GenerateRequestsPerDay".
        return "GenerateRequestsPerDay" in msg or "PerDay" in msg

    @staticmethod
    def build_contents(user_prompt: str, image_png: Optional[bytes] = None,
                       history: Optional[List[Dict]] = None) -> List[Dict]:
        """History turns first, then one user turn: the image (if any) and the text."""
        contents = list(history or [])
        parts: List[Dict] = []
        if image_png:
            parts.append({"inline_data": {"mime_type": "image/png", "data": image_png}})
        parts.append({"text": user_prompt.strip()})
        contents.append({"role": "user", "parts": parts})
        return contents

    def generate(self, system_prompt: str, user_prompt: str, image_png: Optional[bytes] = None,
                 history: Optional[List[Dict]] = None, model_name: Optional[str] = None) -> str:
        name = _qualified(model_name) if model_name else self.model_name
        model = genai.GenerativeModel(name, system_instruction=system_prompt.strip())
        contents = self.build_contents(user_prompt, image_png, history)

        last_err = None
        for attempt in range(1, self.max_attempts + 1):
            self._throttle()
            try:
                resp = model.generate_content(
                    contents,
                    request_options={"timeout": self.timeout_s},
                )
                text = (resp.text or "").strip()
                if not text:
                    raise ModelCallError(f"Empty response text from {name}")
                return text

            except ResourceExhausted as e:
                msg = str(e)
                last_err = e

                # If this is a daily cap, stop fast with a helpful message.
                if self._is_daily_cap(msg):
                    raise ModelCallError(
                        f"Gemini DAILY quota hit for {name}. "
                        "Switch API key, switch model, or enable billing. "
                        f"Raw error: {msg}"
                    ) from e

                # Otherwise it's usually RPM/token rate. Obey retry_after if present.
                wait_s = self._retry_after_seconds(msg)
                if wait_s is None:
                    wait_s = min(8 * attempt, 30)
                time.sleep(wait_s + 0.5)

            except DeadlineExceeded as e:
                last_err = e
                time.sleep(min(2 * attempt, 10))

            except NotFound as e:
                # Model name mismatch. Fail fast.
                raise ModelCallError(f"Model not found: {name}. Raw: {e}") from e

            except Exception as e:
                last_err = e
                time.sleep(min(2 * attempt, 10))

        raise ModelCallError(f"{name} failed after {self.max_attempts} attempts. Last error: {last_err!r}")
