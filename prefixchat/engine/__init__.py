# Session-level inference engine
#
# This package owns the conversation-state cache and the incremental decode
# pipeline that sits on top of a model backend.
#
# Key components:
#   - adapters/        Backends (model execution collaborators)
#   - session.py       Model session: loaded backend, defaults, session lock
#   - prefix_cache.py  Single-record system-prefix cache
#   - ingestion.py     Chunked context ingestion
#   - sampling.py      Sampler chain (top-k / top-p / optional min-p / temperature)
#   - decode.py        Autoregressive sampling loop
#   - text_codec.py    UTF-8 safe assembly of raw token bytes
#   - turn_engine.py   Turn orchestration (blocking + streaming)
