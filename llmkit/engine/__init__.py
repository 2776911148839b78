# Exported-model inference engine
#
# This package runs chat and embedding models that were exported as
# TorchScript artifacts, either one combined graph or a directory of
# per-layer sub-modules.
#
# Key components:
#   - families/        Per-architecture prompt, mask, position and stop rules
#   - registry.py      Maps model identifiers to families
#   - module.py        Execution engine and backend config
#   - tokenizer.py     Vocabulary and Hugging Face tokenizer adapters
#   - session.py       KV-cache lifecycle and the decode loop
#   - embedding.py     Sentence embeddings
#   - vector_store.py  Text/vector store with L2 search
#   - vision.py        Image fetch and preprocessing
