"""
Heartbeat - periodic triggers for the manager dispatch loop and stale recovery.

The loop only calls the same entry points the HTTP routes call; serialization
is the dispatcher's job, not the scheduler's.
"""

import time
import threading
from typing import Callable, Dict

from . import config
from .config import is_dispatch_enabled, validate_dispatch_config
from util.logging import logger


tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run}
running = False
shutdown_event = None


def register_task(name: str, interval_sec: int, func: Callable):
    """
    Register a task to be executed periodically.

    Args:
        name: Unique task identifier
        interval_sec: How often to run this task in seconds
        func: Function to call
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")

    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

    issues = validate_dispatch_config()
    if issues:
        raise ValueError(f"Dispatch configuration invalid: {issues}")

    tasks[name] = {
        "func": func,
        "interval": interval_sec,
        "last_run": None
    }

    print(f"✓ Registered heartbeat task '{name}' (every {interval_sec}s)")


def unregister_task(name: str):
    """Remove a task from the registry."""
    if name in tasks:
        del tasks[name]
        print(f"✓ Unregistered heartbeat task '{name}'")


def list_tasks():
    """Return list of registered task names."""
    return list(tasks.keys())


def dispatch_loop_task():
    """Scheduled trigger for the manager dispatch loop."""
    from .dispatcher import run_dispatch_pass

    result = run_dispatch_pass(trigger="scheduled")
    if result.overlap_prevented:
        print("⏭️  Dispatch pass skipped: another pass is running")
    return result


def stale_recovery_task():
    """Retry or escalate operations stuck in progress."""
    from .workflow_engine import recover_stale_operations

    return recover_stale_operations()


def register_default_tasks():
    """Register the dispatch loop and stale recovery at their configured intervals."""
    register_task("dispatch_loop", config.DISPATCH_INTERVAL_SEC, dispatch_loop_task)
    register_task("stale_recovery", config.STALE_RECOVERY_INTERVAL_SEC, stale_recovery_task)


def start():
    """
    Start the heartbeat loop.

    This runs a cooperative scheduling loop that checks task intervals
    and executes tasks when due. Uses time.monotonic() for reliable timing.
    """
    global running, shutdown_event

    if not is_dispatch_enabled():
        print("Dispatch loop disabled (DISPATCH_ENABLED=false). Skipping start.")
        return

    if running:
        raise RuntimeError("Heartbeat already running")

    issues = validate_dispatch_config()
    if issues:
        raise ValueError(f"Dispatch configuration invalid: {issues}")

    running = True
    shutdown_event = threading.Event()

    print("🚀 Starting heartbeat loop")
    print(f"📋 Registered tasks: {list(tasks.keys())}")
    print("💡 Press Ctrl+C to stop")

    try:
        while running and not shutdown_event.is_set():
            for name, task_info in list(tasks.items()):
                if should_run_task(name, task_info):
                    try:
                        run_task(name, task_info)
                    except RuntimeError as e:
                        # One failing task must not stop the others
                        print(f"❌ Heartbeat task '{name}' failed: {e}")

            shutdown_event.wait(0.5)

    except KeyboardInterrupt:
        print("\n🛑 Heartbeat interrupted by user")
    finally:
        running = False
        print("🏁 Heartbeat loop stopped")


def stop():
    """Stop the heartbeat loop gracefully."""
    global running

    if not running:
        print("Heartbeat not running")
        return

    print("🛑 Stopping heartbeat loop...")
    running = False

    if shutdown_event:
        shutdown_event.set()

    print("✓ Heartbeat stopped")


def should_run_task(name: str, task_info: Dict) -> bool:
    """Check if a task should run this cycle."""
    if task_info["last_run"] is None:
        return True  # Run immediately if never run

    elapsed = time.monotonic() - task_info["last_run"]
    return elapsed >= task_info["interval"]


def run_task(name: str, task_info: Dict):
    """Execute a task and record timing. Failures are re-raised as RuntimeError."""
    start_time = time.monotonic()

    try:
        task_info["func"]()
    except Exception as e:
        end_time = time.monotonic()
        # A failed run still counts, so a broken task waits a full interval
        task_info["last_run"] = end_time
        logger.log_heartbeat_task(name, start_time, end_time, "failed", {"error": str(e)})
        raise RuntimeError(f"Task '{name}' failed after {end_time - start_time:.2f}s: {e}") from e

    end_time = time.monotonic()
    task_info["last_run"] = end_time
    logger.log_heartbeat_task(name, start_time, end_time)


def reset_task(name: str):
    """Reset a task's last_run time to force immediate execution."""
    if name in tasks:
        tasks[name]["last_run"] = None
        print(f"✓ Reset heartbeat task '{name}' (will run immediately)")


def get_status():
    """Return current heartbeat status for monitoring."""
    if not is_dispatch_enabled():
        return {"status": "disabled", "reason": "DISPATCH_ENABLED=false"}

    return {
        "status": "running" if running else "stopped",
        "tasks": {
            name: {
                "interval_sec": info["interval"],
                "last_run": info["last_run"],
                "next_run": info["last_run"] + info["interval"] if info["last_run"] else None
            }
            for name, info in tasks.items()
        },
    }
