"""borrg: run borg backup jobs described by a template-based config file."""
__version__ = "0.3.0"
