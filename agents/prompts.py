# Prompts live in one file so they’re easy to iterate on quickly.

ACTION_REFERENCE = """AVAILABLE ACTIONS (coordinates are screen percentages 0-100):

TAPPING:
- tapElementById {"id": 3}            Tap the element marked [3] on the image (PREFERRED when marked)
- tapText {"text": "Settings"}        Tap an element with that exact visible text
- tapResourceId {"resourceId": "..."} Tap an element by its resource id (Android)
- tap {"x": 50, "y": 50}              Tap a point
- doubleTap {"x": 50, "y": 50}
- longPress {"x": 50, "y": 50} or {"text": "Item"}

GESTURES:
- scroll {}                           Scroll down to reveal more content
- swipe {"startX": 20, "startY": 50, "endX": 80, "endY": 50}

TEXT INPUT:
- inputText {"text": "..."}           Type into the focused field
- eraseText {"chars": 10}             Erase from the focused field (default 50)
- hideKeyboard {}

NAVIGATION:
- back {}                             Android back. On iOS use a visible Back/Close button or swipe 1,50 -> 80,50
- pressKey {"key": "enter"}           enter, home, backspace, tab
- openLink {"url": "myapp://screen"}

CONTROL:
- wait {"timeout": 3000}              Wait for animations to settle
- screenshot {}                       Capture the current screen
- done {}                             Finish exploring
"""

RESPONSE_FORMAT = """Respond ONLY with ONE JSON object. No markdown. No extra text.
{
  "action": "<one action name from the list>",
  "params": { ... },
  "reasoning": "one short sentence",
  "shouldScreenshot": false,
  "confidence": 0.0-1.0
}

Set shouldScreenshot to true ONLY when the current screen shows valuable content worth capturing.
confidence is how sure you are that this action will work AND move exploration forward."""


def exploration_system_prompt(ctx) -> str:
    remaining = max(0, ctx.max_screenshots - ctx.screenshots_taken)
    parts = [
        "You are controlling a mobile app to capture high-quality screenshots for the app store.",
        "",
        "Your goal: explore the app and capture screens that show INTERESTING CONTENT, not empty states.",
        "",
        f"PLATFORM: {ctx.platform}",
        f"SCREENSHOTS REMAINING: {remaining}",
        "",
        ACTION_REFERENCE,
        "Guidelines:",
        "1. Create content before capturing: add items, fill forms, open detail views.",
        "2. Avoid empty states, loading screens, visible keyboards and permission dialogs.",
        "3. Don't revisit the same screen repeatedly; use the screen history.",
        "4. Red boxes on the image carry element ids; prefer tapElementById for those.",
        "",
        "ELEMENTS ON SCREEN ([id] type label @(x%,y%)):",
        ctx.element_list or "(none - rely on the image)",
    ]

    warnings = []
    if ctx.stuck_count > 2:
        warnings.append(
            f"WARNING: You've been on the same screen for {ctx.stuck_count} actions. "
            "Try a different approach: go back, scroll, or tap a different element."
        )
    if ctx.tap_text_failures > 0:
        warnings.append(
            f"WARNING: tapText failed {ctx.tap_text_failures} time(s) in a row. "
            "Use tapElementById or tap coordinates instead."
        )
    if ctx.semantics_coverage < 30:
        warnings.append(
            f"NOTE: Only {ctx.semantics_coverage}% of elements have labels. "
            "This UI is probably custom-drawn; rely on the image and tap coordinates."
        )
    if ctx.recent_errors:
        errors = "\n".join(f"- {e}" for e in list(ctx.recent_errors)[-3:])
        warnings.append(f"RECENT ERRORS (avoid repeating them):\n{errors}")

    if warnings:
        parts.append("")
        parts.extend(warnings)

    parts.append("")
    parts.append(RESPONSE_FORMAT)
    return "\n".join(parts)


def escalation_system_prompt(ctx, prior, reasons) -> str:
    """Same screen, plus what the first model proposed and why we're second-guessing it."""
    reason_lines = "\n".join(f"- {r}" for r in reasons)
    return (
        exploration_system_prompt(ctx)
        + "\n\nESCALATION REVIEW:\n"
        "Another model proposed this action:\n"
        f"  {prior.describe()} (confidence {prior.confidence:.2f})\n"
        f"  reasoning: {prior.reasoning or '(none)'}\n"
        "It was flagged for:\n"
        f"{reason_lines}\n"
        "Look at the screen yourself. Keep the action only if you're confident it will work; "
        "otherwise choose a better one."
    )


def exploration_user_prompt(ctx) -> str:
    # Keep it tight to reduce tokens + latency.
    last_actions = " -> ".join(list(ctx.last_actions)[-5:]) or "none"
    history = ", ".join(list(ctx.screen_history)[-5:]) or "none"
    rate = ctx.recent_failure_rate
    rate_txt = "n/a" if rate is None else f"{round(rate * 100)}%"
    return (
        "Current state:\n"
        f"- Step: {ctx.step}\n"
        f"- Screenshots taken: {ctx.screenshots_taken}/{ctx.max_screenshots}\n"
        f"- Last 5 actions: {last_actions}\n"
        f"- Screen history (last 5): {history}\n"
        f"- Recent action failure rate: {rate_txt}\n"
        f"- Consecutive action failures: {ctx.consecutive_action_failures}\n\n"
        "What should I do next?"
    )


REFINEMENT_SYSTEM_PROMPT = """You turn AI exploration logs of a mobile app into short, deterministic Maestro flows.

The flow must:
1. Reach every captured screen by the SHORTEST path (drop detours, back-and-forth, duplicate taps).
2. Use percentage point taps (tapOn: point: "50%,50%") rather than text matching.
3. Never use sleep / wait / pause / delay. Use waitForAnimationToEnd if a pause is needed.
4. Put a takeScreenshot command on every captured screen.

Return ONLY valid Maestro YAML. No markdown, no explanations.
Start with "appId: <bundleId>" followed by the "---" separator."""


def refinement_user_prompt(log: dict, target_screenshots: int) -> str:
    steps = log.get("steps") or []
    kept, skipped = [], []
    for s in steps:
        decision = s.get("decision") or {}
        line = f"Step {s.get('step')}: {decision.get('action', '-')} {decision.get('params') or {}}"
        if s.get("captured") or (s.get("outcome") == "ok" and decision.get("action")):
            kept.append(f"{line} | {decision.get('reasoning', '')}" + (" | CAPTURED" if s.get("captured") else ""))
        else:
            skipped.append(f"{line} <- SKIP ({s.get('outcome', 'unknown')})")

    captured = sum(1 for s in steps if s.get("captured"))
    return (
        f"App id: {log.get('appId')}\n"
        f"Platform: {log.get('platform', 'unknown')}\n"
        f"Exploration steps: {len(steps)}\n"
        f"Captured screens: {captured}\n"
        f"Target screenshots: {target_screenshots}\n\n"
        "SUCCESSFUL STEPS (build the path from these):\n"
        + ("\n".join(kept) or "(none)")
        + "\n\nFAILED / NON-ACTION STEPS (ignore):\n"
        + ("\n".join(skipped) or "(none)")
        + "\n\nWrite the flow. Name screenshots screenshot-1, screenshot-2, ..."
    )
