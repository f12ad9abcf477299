"""Pet food pantry order fulfillment: record lookup, bag labels, merge and write-back."""

__version__ = "1.1.0"
