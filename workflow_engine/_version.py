__version__ = "0.3.0"

# Part of every cache fingerprint and persisted snapshot; bump when the
# cached value format or fingerprint inputs change
ENGINE_VERSION = "engine-0.3"
