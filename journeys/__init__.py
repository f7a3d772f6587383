"""
Journey step-advancement — quiet hours, rate limits, location locking,
the send gate and the step dispatcher.
"""
