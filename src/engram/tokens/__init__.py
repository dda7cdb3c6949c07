from engram.tokens.estimator import TokenEstimator

__all__ = ["TokenEstimator"]
