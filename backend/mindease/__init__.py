"""MindEase peer-support chat backend."""
