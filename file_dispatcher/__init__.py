"""File Dispatcher: copies new files from watched folders to their destinations.

Runs unattended as a background service: every file created directly
inside a configured source folder is copied, once, into the matching
destination folder.
"""

__version__ = "1.0.0"
__app_name__ = "File Dispatcher"

SERVICE_NAME = "FileDispatcher"
SERVICE_DISPLAY_NAME = "File Dispatcher that copies files."
SERVICE_DESCRIPTION = (
    "Watches configured folders and copies every new file into the "
    "matching destination folder."
)
