"""
tictac - Metronome with a lookahead beat scheduler and tap tempo.

Modules:
    scheduler: Lookahead beat scheduler (Metronome)
    tap: Tap tempo estimator (TapEstimator)
    emitter: Sound emitter contract and rtmixer implementation
    timer: Poll timer with cancellation token
    app: Rhythm state and component wiring
    cli: Console front end
"""

__version__ = "0.1.0"

# Note: Modules are imported on-demand so that importing the package does not
# load numpy or the audio stack. Use: from tictac import scheduler, tap, etc.
