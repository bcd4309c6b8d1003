"""
autoclock — Background Attendance Agent v1.2
============================================
Architecture: one Scheduler behind a re-entrant lock, driven by a heartbeat
thread and per-operation timer threads. Main thread just waits.

  constants.py     → Version, intervals, retry policy, endpoints, store keys
  config.py        → Paths, logging, config load/save/normalize
  errors.py        → ApiError hierarchy + StorageError
  http_client.py   → HTTP session with retry/pooling + SSL fix
  storage.py       → CredentialStore (one file per key)
  state.py         → Session, PendingOperation, WorkSchedule, SchedulerState
  api.py           → AttendanceClient (token exchange, attendance, clock in/out)
  token_manager.py → Saved-token calls with refresh-once-on-auth-error
  reconciler.py    → Remote attendance row → authoritative Session
  events.py        → EventEmitter (fire-and-forget observers)
  scheduler.py     → State machine, timers, manual overrides
  heartbeat.py     → GapDetector (wall-clock gap = machine was asleep)
  activity_log.py  → Monthly activity log containers in the store
  enrollment.py    → Console first-run setup (API URL, refresh token)
  app.py           → AgentApp (wiring, signals, lifecycle)
  runner.py        → main() + auto-restart wrapper
"""
