"""Concrete collaborators for cityscope: storage, extraction, geocoding providers and Telegram delivery."""
