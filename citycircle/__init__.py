"""CityCircle Loops: hybrid check-in and deferred points settlement."""
__version__ = "1.0.0"
