# Dispatch core: session registry, notification fan-out and the request
# lifecycle coordinator. Modules are imported directly to keep
# `database.queries -> dispatch.exceptions` free of import cycles.
