import os

# Keep tests free of tracer providers and instrumentation side effects
os.environ.setdefault("DISABLE_TELEMETRY", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
