"""tmux operations for hosting and inspecting console sessions."""

import shutil
import subprocess
from typing import Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

# Declared up front so tmux does not probe the browser terminal with DA queries
TERMINAL_FEATURES = (
    "xterm*:256:clipboard:ccolour:cstyle:focus:mouse:overline:rectfill:RGB:strikethrough:title:usstyle"
)


class TmuxController:
    """Controls tmux sessions backing terminal servers."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})

        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 3)
        self.create_timeout_seconds = tmux_timeouts.get("create_timeout_seconds", 5)
        self.capture_timeout_seconds = tmux_timeouts.get("capture_timeout_seconds", 5)

    def _run_tmux(
        self, *args: str, check: bool = True, timeout: Optional[float] = None
    ) -> subprocess.CompletedProcess:
        """Run a tmux command."""
        cmd = ["tmux"] + list(args)
        logger.debug(f"Running tmux command: {' '.join(cmd)}")
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=check,
            timeout=timeout or self.command_timeout_seconds,
        )

    def _query(self, *args: str, timeout: Optional[float] = None) -> Optional[str]:
        """Run a read-only tmux command, returning stdout or None on any failure."""
        try:
            result = self._run_tmux(*args, check=False, timeout=timeout)
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
            logger.debug(f"tmux {args[0]} unavailable: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout

    def is_available(self) -> bool:
        """Check whether the tmux binary is installed."""
        return shutil.which("tmux") is not None

    def session_exists(self, session_name: str) -> bool:
        """Check if a tmux session exists."""
        return self._query("has-session", "-t", session_name) is not None

    def list_sessions(self) -> List[str]:
        """List all tmux sessions."""
        output = self._query("list-sessions", "-F", "#{session_name}")
        if output is None:
            return []
        return [s.strip() for s in output.strip().split("\n") if s.strip()]

    def list_panes(self) -> Dict[int, str]:
        """
        Map every pane's shell pid to the session that owns it.

        Returns:
            Dict of pane pid -> session name, empty when no tmux server is running
        """
        # Linked viewer sessions share panes with their group; report the group name
        output = self._query(
            "list-panes", "-a", "-F",
            "#{pane_pid} #{?session_grouped,#{session_group},#{session_name}}",
        )
        pane_map: Dict[int, str] = {}
        if not output:
            return pane_map

        for line in output.splitlines():
            pid_str, _, name = line.strip().partition(" ")
            if not name or not pid_str.isdigit():
                continue
            pane_map[int(pid_str)] = name
        return pane_map

    def is_pane_dead(self, session_name: str) -> Optional[bool]:
        """
        Check whether the session's pane process has exited.

        Returns:
            True/False, or None when the state cannot be read
        """
        output = self._query("list-panes", "-t", session_name, "-F", "#{pane_dead}")
        if output is None:
            return None
        flags = [line.strip() for line in output.splitlines() if line.strip()]
        return bool(flags) and all(flag == "1" for flag in flags)

    def pane_commands(self, session_name: str) -> List[str]:
        """Current foreground command of each pane in the session."""
        output = self._query("list-panes", "-t", session_name, "-F", "#{pane_current_command}")
        if output is None:
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    def capture_pane(self, session_name: str, full_history: bool = True, lines: int = 50) -> Optional[str]:
        """
        Capture output from a session's pane.

        Args:
            session_name: Session to capture from
            full_history: Include the whole scrollback
            lines: Number of lines to capture when not capturing full history

        Returns:
            Captured text or None on error
        """
        start = "-" if full_history else f"-{lines}"
        return self._query(
            "capture-pane",
            "-t", session_name,
            "-p",  # Print to stdout
            "-S", start,
            timeout=self.capture_timeout_seconds,
        )

    def get_global_option(self, option: str) -> Optional[str]:
        """Read a global session option value."""
        output = self._query("show-options", "-gv", option)
        return output.strip() if output is not None else None

    def set_global_option(self, option: str, value: str) -> bool:
        try:
            self._run_tmux("set-option", "-g", option, value)
            return True
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"Failed to set global tmux option {option}={value}: {e}")
            return False

    def declare_terminal_features(self) -> None:
        """Pre-declare terminal capabilities and lower escape-time for browser clients."""
        try:
            self._run_tmux("set", "-s", "terminal-features[0]", TERMINAL_FEATURES)
            self._run_tmux("set", "-s", "escape-time", "25")
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            # tmux < 3.2 has no terminal-features
            logger.debug(f"Could not declare terminal features: {e}")

    def create_hosted_session(self, session_name: str, working_dir: str, command: str) -> bool:
        """
        Create a detached session that keeps its pane after the command exits.

        A global ``destroy-unattached on`` would kill the detached session before
        per-session options can be applied, so it is switched off for the
        duration of the creation and restored afterwards.

        Args:
            session_name: Name for the tmux session
            working_dir: Directory the pane starts in
            command: Shell command run in the pane

        Returns:
            True if session created successfully
        """
        global_destroy = self.get_global_option("destroy-unattached") or "off"
        if global_destroy == "on":
            self.set_global_option("destroy-unattached", "off")

        try:
            self._run_tmux(
                "new-session",
                "-d",
                "-s", session_name,
                "-c", working_dir,
                command,
                timeout=self.create_timeout_seconds,
            )
            self._run_tmux("set-option", "-t", session_name, "destroy-unattached", "off")
            self._run_tmux("set-option", "-t", session_name, "remain-on-exit", "on")
            for option, value in (("status", "off"), ("mouse", "on")):
                try:
                    self._run_tmux("set-option", "-t", session_name, option, value)
                except subprocess.CalledProcessError as e:
                    logger.debug(f"Cosmetic option {option} not applied: {e.stderr}")
            logger.info(f"Created tmux session {session_name} in {working_dir}")
            return True

        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to create tmux session {session_name}: {e.stderr}")
            return False
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"Failed to create tmux session {session_name}: {e}")
            return False
        finally:
            if global_destroy == "on":
                self.set_global_option("destroy-unattached", "on")

    def kill_session(self, session_name: str) -> bool:
        """
        Kill a tmux session.

        Args:
            session_name: Session to kill

        Returns:
            True if session killed successfully
        """
        if not self.session_exists(session_name):
            logger.warning(f"Session {session_name} does not exist")
            return True  # Already gone

        try:
            self._run_tmux("kill-session", "-t", session_name)
            logger.info(f"Killed session {session_name}")
            return True

        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to kill session: {e.stderr}")
            return False
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"Failed to kill session: {e}")
            return False
