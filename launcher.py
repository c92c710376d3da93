#!/usr/bin/env python3
"""
Windows launcher wrapper for Map Rooms
This script launches the server or the client without showing a console window
"""
import sys
import subprocess
from pathlib import Path

SCRIPTS = {
    "server": "room_server.py",
    "client": "map_client.py",
}


def _app_dir() -> Path:
    if getattr(sys, 'frozen', False):
        # Running as compiled executable
        return Path(sys.executable).parent
    return Path(__file__).parent


def _python_exe(app_dir: Path) -> str:
    venv_python = app_dir / ".venv" / "Scripts" / "python.exe"
    python_exe = str(venv_python) if venv_python.exists() else sys.executable
    # Use pythonw.exe if available (Windows-specific, no console)
    if python_exe.endswith("python.exe"):
        pythonw_exe = python_exe.replace("python.exe", "pythonw.exe")
        if Path(pythonw_exe).exists():
            python_exe = pythonw_exe
    return python_exe


def _show_error(message: str) -> None:
    try:
        import tkinter as tk
        from tkinter import messagebox
        root = tk.Tk()
        root.withdraw()
        messagebox.showerror("Map Rooms Error", message)
    except Exception:
        print(f"ERROR: {message}")


def build_command(argv, app_dir: Path):
    """Return the command line for `launcher.py [server|client] [args...]` (client by default)."""
    args = list(argv)
    target = "client"
    if args and args[0] in SCRIPTS:
        target = args.pop(0)
    script = app_dir / SCRIPTS[target]
    return [_python_exe(app_dir), str(script)] + args, script


def main(argv=None):
    """Launch Map Rooms without console window"""
    app_dir = _app_dir()
    command, script = build_command(sys.argv[1:] if argv is None else argv, app_dir)

    if not script.exists():
        _show_error(f"Could not find script:\n{script}")
        return 1

    try:
        if sys.platform == "win32":
            CREATE_NO_WINDOW = 0x08000000
            subprocess.Popen(command, cwd=str(app_dir), creationflags=CREATE_NO_WINDOW)
        else:
            subprocess.Popen(command, cwd=str(app_dir))
    except Exception as e:
        _show_error(f"Failed to launch:\n{e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
