"""Sales dashboard core: AI call queue dispatch and deal pipeline."""
