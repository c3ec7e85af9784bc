"""Request, result and response models."""
