"""
odocam - Odometer Mileage Recognition

Reads a single best-guess mileage, with a calibrated confidence, from a
photo of a vehicle instrument cluster using any OCR engine behind a
narrow recognizer interface.
"""

__version__ = "0.1.0"
