"""
Abstract base class for page drivers

Defines the capability interface the scan state machine uses to interact with
the host system's web UI. The state machine never touches page content
directly; everything page-specific lives behind this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from ...models.credentials import CookieEntry, PasswordCredentials
from ...models.job import ArtifactKind, ResultScores, SourceFile


class PageKind(Enum):
    """Coarse classification of the page currently shown by the host"""
    LOGIN = "login"
    LAUNCH_PROMPT = "launch_prompt"
    FOLDER_LISTING = "folder_listing"
    REPORT_VIEWER = "report_viewer"
    UPLOAD_MODAL = "upload_modal"
    UNKNOWN = "unknown"


@dataclass
class ResultRow:
    """A row of the folder listing that matches the job's document"""
    text: str
    scores: ResultScores = field(default_factory=ResultScores)

    @property
    def ready(self) -> bool:
        return self.scores.ready


class PageDriver(ABC):
    """Abstract base class for page drivers"""

    def __init__(self):
        """Initialize the driver"""
        self.on_log_message: Optional[Callable[[str], None]] = None

    def set_log_callback(self, callback: Optional[Callable[[str], None]]):
        """Set the logging callback function"""
        self.on_log_message = callback

    def _log(self, message: str):
        """Internal logging helper"""
        if self.on_log_message:
            self.on_log_message(message)

    @abstractmethod
    async def open(self, url: str):
        """Load a URL in the driver's page, creating the page if needed"""

    @abstractmethod
    async def inject_cookies(self, entries: List[CookieEntry]):
        """Install session cookies before any host page is opened"""

    @abstractmethod
    async def detect_page_kind(self) -> PageKind:
        pass

    @abstractmethod
    async def submit_login(self, credentials: PasswordCredentials):
        pass

    @abstractmethod
    async def click_launch(self):
        pass

    @abstractmethod
    async def navigate_to_folder(self, name: str) -> bool:
        """
        Open the named folder from the class/folder listing

        Returns:
            True if the folder was found and opened
        """

    @abstractmethod
    async def is_already_uploaded(self, display_name: str) -> bool:
        """Check whether the folder listing already holds this document"""

    @abstractmethod
    async def attach_and_submit(self, source_file: SourceFile, title: str):
        """Attach the source file in the upload form and submit it"""

    @abstractmethod
    async def find_result_row(self, display_name: str) -> Optional[ResultRow]:
        pass

    @abstractmethod
    async def open_result_viewer(self, display_name: str) -> bool:
        pass

    @abstractmethod
    async def download_artifact(self, kind: ArtifactKind) -> Optional[bytes]:
        """
        Download one result artifact from the open report viewer

        Returns:
            The artifact bytes, or None if the download control is missing
        """

    @abstractmethod
    async def refresh(self):
        pass

    @abstractmethod
    async def close(self):
        """Release the page and browser; safe to call more than once"""

    @abstractmethod
    def get_driver_name(self) -> str:
        """Get the name of this driver"""
