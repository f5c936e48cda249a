"""Image acquisition: credentials, pull progress, export and tar reconstruction."""

from image_inspector.acquisition.credentials import CredentialSet, resolve_credentials
from image_inspector.acquisition.progress import PullProgressTracker
from image_inspector.acquisition.receiver import ImageReceiver, create_output_dir
from image_inspector.acquisition.tar_extract import extract_tar_stream

__all__ = [
    "CredentialSet",
    "resolve_credentials",
    "PullProgressTracker",
    "ImageReceiver",
    "create_output_dir",
    "extract_tar_stream",
]
