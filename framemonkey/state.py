#state.py
import threading

stop_event = threading.Event()
driver = None
driver_path = None
settings = None
store = None
storage = None
coordinator = None
