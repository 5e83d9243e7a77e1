"""Project dependency installation inside a sandbox."""

import logging

from builder.services.sandbox import SandboxHandle, SandboxService

logger = logging.getLogger(__name__)

# Lock file checked in order, and the package manager it implies
LOCK_FILES = [
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
]

INSTALL_COMMANDS = {
    "pnpm": ["pnpm", "install", "--frozen-lockfile"],
    "yarn": ["yarn", "install", "--frozen-lockfile"],
    "npm": ["npm", "install", "--no-audit", "--no-fund"],
}

INSTALL_TIMEOUT = 600


class DependencyService:
    """Detects the project type and installs its dependencies.

    Every failure here is reported as a warning; installation never fails a task.
    """

    @staticmethod
    def detect_package_manager(handle: SandboxHandle) -> str:
        for lock_file, manager in LOCK_FILES:
            if SandboxService.file_exists(handle, lock_file):
                return manager
        return "npm"

    @staticmethod
    def _install_node(handle: SandboxHandle, manager: str) -> bool:
        if manager != "npm":
            which = SandboxService.run_command(handle, "which", [manager])
            if not which.success:
                SandboxService.run_command(handle, "npm", ["install", "-g", manager])
            if manager == "pnpm":
                SandboxService.run_command(
                    handle, "pnpm", ["config", "set", "store-dir", "/tmp/pnpm-store"]
                )

        command, *args = INSTALL_COMMANDS[manager]
        result = SandboxService.run_command(
            handle, command, args, timeout=INSTALL_TIMEOUT
        )
        return result.success

    @staticmethod
    def install(handle: SandboxHandle, task_logger) -> bool:
        """Install Node.js or Python dependencies if the project declares any.

        Returns:
            True if dependencies were installed or none were needed
        """
        if SandboxService.file_exists(handle, "package.json"):
            manager = DependencyService.detect_package_manager(handle)
            task_logger.info(f"Detected {manager} package manager")
            task_logger.command(" ".join(INSTALL_COMMANDS[manager]))

            if DependencyService._install_node(handle, manager):
                task_logger.info("Node.js dependencies installed")
                return True

            if manager != "npm":
                task_logger.info(f"{manager} install failed, trying npm as fallback")
                if DependencyService._install_node(handle, "npm"):
                    task_logger.info("Node.js dependencies installed")
                    return True

            task_logger.info(
                "Warning: Failed to install Node.js dependencies, continuing"
            )
            return False

        if SandboxService.file_exists(handle, "requirements.txt"):
            task_logger.command("python3 -m pip install -r requirements.txt")
            result = SandboxService.run_command(
                handle,
                "python3",
                ["-m", "pip", "install", "-r", "requirements.txt"],
                timeout=INSTALL_TIMEOUT,
            )
            if result.success:
                task_logger.info("Python dependencies installed")
                return True
            task_logger.info("Warning: Failed to install Python dependencies, continuing")
            return False

        task_logger.info("No package.json or requirements.txt found, skipping install")
        return True
