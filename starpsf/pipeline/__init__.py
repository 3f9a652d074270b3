from .pipeline import find_stars, is_star, format_psf_result

__all__ = ["find_stars", "is_star", "format_psf_result"]
