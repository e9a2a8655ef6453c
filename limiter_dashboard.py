#!/usr/bin/env python3
"""
limiter_dashboard.py - Desktop dashboard for the Rate Limiter service.

Features:
- Live metric cards (total, allowed, blocked, allow rate) refreshed every 2s.
- Rolling "Allowed vs. Blocked" chart of the last 20 points with new traffic.
- One-shot load tests: pick an algorithm, limits and request count, then see
  every request's outcome as a pass/fail dot.
- Headless/CLI mode for scripted runs.
"""

import argparse
import queue
import sys
import threading
import time
from typing import Dict, List, Optional

# Tkinter and Matplotlib imports
import tkinter as tk
from tkinter import ttk, messagebox
from tkinter.scrolledtext import ScrolledText
from matplotlib.backends.backend_tkagg import FigureCanvasTkAgg

from limiter_chart import LiveRequestChart
from limiter_monitor import (
    ALGORITHMS, APP_VERSION, DEFAULT_BASE_URL, MetricsSnapshot, MonitorWorker, ResultIndicator,
    RunState, TestRunConfig, format_metrics,
)

RUN_BUTTON_TEXT = "🚀 Run Test"
RUNNING_BUTTON_TEXT = "⏳ Running test..."
# (from, to, default) for each slider
MAX_REQUESTS_RANGE = (1, 100, 10)
WINDOW_RANGE = (1, 60, 10)
NUM_REQUESTS_RANGE = (1, 200, 50)
DOT_SIZE = 12; DOT_GAP = 4


# ─────────────────── MONITOR CONTROLLER (The Brain) ───────────────────
class MonitorController:
    """Bridges GUI <-> MonitorWorker. All widget updates happen here, on the Tk thread."""

    def __init__(self, app: Optional['RateLimiterMonitorApp'], config: Dict):
        self.app = app
        self.config = config
        self.state = RunState.IDLE
        self.output_queue = queue.Queue()
        self.worker: Optional[MonitorWorker] = None
        self.worker_thread: Optional[threading.Thread] = None

    def start_monitoring(self):
        self.worker = MonitorWorker(self.config, self.output_queue)
        self.worker_thread = threading.Thread(target=self.worker.run, daemon=True); self.worker_thread.start()
        self.app.master.after(100, self.process_queue)

    def start_test(self):
        if self.state == RunState.RUNNING: return
        config = self.app.get_current_config()
        if not config: return
        if not (self.worker_thread and self.worker_thread.is_alive()) or not self.worker.wait_ready(timeout=1.0):
            messagebox.showerror("Error", "The monitor worker is not running."); return
        self.state = RunState.RUNNING; self.app.set_control_state(self.state)
        self.worker.start_test(config)

    def shutdown(self):
        if self.worker: self.worker.stop()
        if self.worker_thread: self.worker_thread.join(timeout=2)

    def process_queue(self):
        try:
            while True:
                msg = self.output_queue.get_nowait()
                msg_type, payload = msg.get("type"), msg.get("payload")

                if msg_type == "log": self.app.log_output(payload)
                elif msg_type == "metrics": self.app.update_metrics_display(payload)
                elif msg_type == "history_append":
                    point = payload['point']
                    self.app.chart.append_point(point.label, point.allowed, point.blocked)
                    self.app.chart.redraw(animated=payload['animate'])
                elif msg_type == "run_state":
                    self.state = payload; self.app.set_control_state(payload)
                elif msg_type == "test_result":
                    self.app.show_test_result(payload['summary'], payload['indicators'])
                elif msg_type == "test_failed":
                    messagebox.showerror("Test Failed", payload['message'])
                elif msg_type == "worker_finished":
                    self.state = RunState.IDLE; self.app.set_control_state(self.state)
                    self.app.log_output("--- MONITOR STOPPED ---"); return
        except queue.Empty: pass
        self.app.master.after(100, self.process_queue)


# ─────────────────── GUI ───────────────────
class RateLimiterMonitorApp(ttk.Frame):

    def __init__(self, master=None, controller=None):
        super().__init__(master, padding="10"); self.master = master; self.controller = controller
        self.master.title(APP_VERSION); self.master.geometry("1000x850")
        self.grid(sticky="nsew"); self.master.columnconfigure(0, weight=1); self.master.rowconfigure(0, weight=1)
        self._create_widgets(); self.set_control_state(RunState.IDLE)
        self.master.protocol("WM_DELETE_WINDOW", self._on_closing)

    def _on_closing(self):
        if self.controller.state == RunState.RUNNING:
            if not messagebox.askyesno("Exit", "A test is running. Are you sure you want to exit?"): return
        self.controller.shutdown(); self.master.destroy()

    def _create_widgets(self):
        self.notebook = ttk.Notebook(self); self.notebook.grid(row=0, column=0, sticky="nsew")
        self.rowconfigure(0, weight=1); self.columnconfigure(0, weight=1)
        self.dashboard_tab = ttk.Frame(self.notebook, padding="10"); self.log_tab = ttk.Frame(self.notebook, padding="10")
        self.notebook.add(self.dashboard_tab, text="Dashboard"); self.notebook.add(self.log_tab, text="Output Log")
        self._create_dashboard_tab(); self._create_log_tab()

    def _create_dashboard_tab(self):
        frame = self.dashboard_tab; frame.columnconfigure(0, weight=1); frame.rowconfigure(1, weight=1)

        cards_frame = ttk.LabelFrame(frame, text="Live Metrics", padding=10); cards_frame.grid(row=0, column=0, sticky="ew", pady=5)
        self.metric_vars = {}
        for col, (key, text) in enumerate([("total", "Total Requests"), ("allowed", "Allowed"), ("blocked", "Blocked"), ("allow_rate", "Allow Rate")]):
            cards_frame.columnconfigure(col, weight=1)
            ttk.Label(cards_frame, text=text).grid(row=0, column=col)
            var = tk.StringVar(value="N/A"); ttk.Label(cards_frame, textvariable=var, font="-size 16 -weight bold").grid(row=1, column=col)
            self.metric_vars[key] = var

        chart_frame = ttk.LabelFrame(frame, text="Request History", padding=10); chart_frame.grid(row=1, column=0, sticky="nsew", pady=5)
        chart_frame.rowconfigure(0, weight=1); chart_frame.columnconfigure(0, weight=1)
        self.chart = LiveRequestChart()
        self.canvas = FigureCanvasTkAgg(self.chart.fig, master=chart_frame); self.canvas.get_tk_widget().grid(row=0, column=0, sticky="nsew")
        self.chart.draw = self.canvas.draw; self.chart.draw_idle = self.canvas.draw_idle
        self.chart.redraw(animated=False)

        bottom_pane = ttk.PanedWindow(frame, orient=tk.HORIZONTAL); bottom_pane.grid(row=2, column=0, sticky="ew", pady=5)
        ctrl_frame = ttk.LabelFrame(bottom_pane, text="Test Controls", padding=10); ctrl_frame.columnconfigure(1, weight=1)
        ttk.Label(ctrl_frame, text="Algorithm:").grid(row=0, column=0, sticky="w", padx=5)
        self.algorithm_var = tk.StringVar(value=ALGORITHMS[0])
        self.algorithm_combo = ttk.Combobox(ctrl_frame, textvariable=self.algorithm_var, values=ALGORITHMS, state="readonly")
        self.algorithm_combo.grid(row=0, column=1, sticky="ew", padx=5)

        def create_slider(parent, text, range_, row):
            from_, to, default = range_
            ttk.Label(parent, text=text).grid(row=row, column=0, sticky="w", padx=5)
            slider = ttk.Scale(parent, from_=from_, to=to, orient=tk.HORIZONTAL); slider.set(default); slider.grid(row=row, column=1, sticky="ew", padx=5)
            label = ttk.Label(parent, text=str(default), width=5); label.grid(row=row, column=2, sticky="w", padx=5)
            slider.config(command=lambda value: label.config(text=str(int(float(value)))))
            return slider
        self.max_requests_slider = create_slider(ctrl_frame, "Max Requests:", MAX_REQUESTS_RANGE, 1)
        self.window_slider = create_slider(ctrl_frame, "Window (s):", WINDOW_RANGE, 2)
        self.num_requests_slider = create_slider(ctrl_frame, "Test Requests:", NUM_REQUESTS_RANGE, 3)
        self.run_button = ttk.Button(ctrl_frame, text=RUN_BUTTON_TEXT, command=self.controller.start_test, style="Accent.TButton")
        self.run_button.grid(row=4, column=0, columnspan=3, pady=10)
        bottom_pane.add(ctrl_frame, weight=1)

        results_frame = ttk.LabelFrame(bottom_pane, text="Test Results", padding=10); results_frame.columnconfigure(1, weight=1)
        self.result_vars = {}
        for row, (key, text) in enumerate([("allowed", "Allowed:"), ("blocked", "Blocked:"), ("duration", "Duration:"), ("throughput", "Throughput:")]):
            ttk.Label(results_frame, text=text).grid(row=row, column=0, sticky="w", padx=5, pady=2)
            var = tk.StringVar(value="-"); ttk.Label(results_frame, textvariable=var, font="-weight bold").grid(row=row, column=1, sticky="w", padx=5)
            self.result_vars[key] = var
        self.indicator_canvas = tk.Canvas(results_frame, height=60, highlightthickness=0)
        self.indicator_canvas.grid(row=4, column=0, columnspan=2, sticky="ew", pady=5)
        self.indicator_hint = tk.StringVar(value="")
        ttk.Label(results_frame, textvariable=self.indicator_hint).grid(row=5, column=0, columnspan=2, sticky="w")
        bottom_pane.add(results_frame, weight=1)

    def _create_log_tab(self):
        frame = self.log_tab; frame.rowconfigure(0, weight=1); frame.columnconfigure(0, weight=1)
        self.output_text = ScrolledText(frame, state='disabled', wrap=tk.WORD, height=15); self.output_text.grid(row=0, column=0, sticky="nsew")

    def get_current_config(self) -> Optional[TestRunConfig]:
        try:
            return TestRunConfig.from_values(self.algorithm_var.get(), self.max_requests_slider.get(),
                                             self.window_slider.get(), self.num_requests_slider.get())
        except ValueError as e:
            messagebox.showerror("Configuration Error", f"Invalid configuration: {e}"); return None

    def set_control_state(self, state: RunState):
        is_idle = state == RunState.IDLE
        self.run_button.config(state=tk.NORMAL if is_idle else tk.DISABLED,
                               text=RUN_BUTTON_TEXT if is_idle else RUNNING_BUTTON_TEXT)

    def log_output(self, message: str):
        self.output_text.config(state='normal')
        self.output_text.insert(tk.END, f"{time.strftime('%H:%M:%S')} - {message}\n")
        self.output_text.see(tk.END); self.output_text.config(state='disabled')

    def update_metrics_display(self, snapshot: MetricsSnapshot):
        for key, value in format_metrics(snapshot).items(): self.metric_vars[key].set(value)

    def show_test_result(self, summary: Dict[str, str], indicators: List[ResultIndicator]):
        for key, var in self.result_vars.items(): var.set(summary[key])
        canvas = self.indicator_canvas; canvas.delete("all"); self.indicator_hint.set("")
        per_row = max(1, canvas.winfo_width() // (DOT_SIZE + DOT_GAP))
        for i, indicator in enumerate(indicators):
            x = (i % per_row) * (DOT_SIZE + DOT_GAP); y = (i // per_row) * (DOT_SIZE + DOT_GAP)
            color = '#4ade80' if indicator.allowed else '#f87171'
            item = canvas.create_oval(x, y, x + DOT_SIZE, y + DOT_SIZE, fill=color, outline="")
            canvas.tag_bind(item, "<Enter>", lambda _e, t=indicator.title: self.indicator_hint.set(t))
            canvas.tag_bind(item, "<Leave>", lambda _e: self.indicator_hint.set(""))
        rows = (len(indicators) + per_row - 1) // per_row
        canvas.config(height=max(DOT_SIZE, rows * (DOT_SIZE + DOT_GAP)))


# ─────────────────── MAIN & CLI ───────────────────
def run_headless(args) -> int:
    print(f"--- {APP_VERSION} Headless Mode ---")
    try:
        test_config = TestRunConfig.from_values(args.algorithm, args.max_requests, args.window, args.requests)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr); return 1
    output_queue = queue.Queue()
    worker = MonitorWorker({'base_url': args.url}, output_queue)
    worker_thread = threading.Thread(target=worker.run, daemon=True); worker_thread.start()
    if not worker.wait_ready(timeout=5):
        print("Error: monitor worker failed to start.", file=sys.stderr); return 1
    print(f"Starting test against {args.url}: {test_config.num_requests} requests using {test_config.algorithm} "
          f"({test_config.max_requests} per {test_config.window_seconds}s).")
    worker.start_test(test_config)

    last_snapshot, test_payload, failure = None, None, None
    run_started, run_finished, finished_at = False, False, None
    try:
        while True:
            if run_finished and time.monotonic() - finished_at >= args.watch: break
            try: msg = output_queue.get(timeout=0.2)
            except queue.Empty: continue
            msg_type, payload = msg['type'], msg['payload']
            if msg_type == 'log': print(f"{time.strftime('%H:%M:%S')} - {payload}")
            elif msg_type == 'metrics': last_snapshot = payload
            elif msg_type == 'history_append':
                point = payload['point']; print(f"  [{point.label}] allowed={point.allowed:,} blocked={point.blocked:,}")
            elif msg_type == 'test_result': test_payload = payload
            elif msg_type == 'test_failed': failure = payload
            elif msg_type == 'run_state':
                if payload == RunState.RUNNING: run_started = True
                elif run_started: run_finished, finished_at = True, time.monotonic()
            elif msg_type == 'worker_finished': break
    except KeyboardInterrupt: print("\nInterrupted by user. Shutting down...")
    finally:
        worker.stop(); worker_thread.join(timeout=5)

    print("\n--- FINAL RESULTS ---")
    if failure:
        print(failure['message'], file=sys.stderr); print(f"  Cause: {failure['error']}", file=sys.stderr)
    elif test_payload:
        summary = test_payload['summary']
        print(f"  Allowed: {summary['allowed']}"); print(f"  Blocked: {summary['blocked']}")
        print(f"  Duration: {summary['duration']}"); print(f"  Throughput: {summary['throughput']}")
        print(f"  Outcomes: {''.join('+' if i.allowed else 'x' for i in test_payload['indicators'])}")
    else: print("Test did not complete.")
    print("\n[Metrics Summary]")
    if last_snapshot:
        for key, value in format_metrics(last_snapshot).items(): print(f"  {key.replace('_', ' ').title()}: {value}")
    else: print("  No metrics received.")
    return 0 if test_payload and not failure else 1


def main():
    parser = argparse.ArgumentParser(description=f"{APP_VERSION} - A GUI/CLI dashboard for the Rate Limiter service.")
    parser.add_argument('--url', type=str, default=DEFAULT_BASE_URL, help=f'Rate limiter server base URL (default: {DEFAULT_BASE_URL}).')
    parser.add_argument('--cli', action='store_true', help='Run one test in headless (command-line) mode.')
    parser.add_argument('--algorithm', choices=ALGORITHMS, default=ALGORITHMS[0], help='Algorithm to test (CLI).')
    parser.add_argument('--max-requests', type=int, default=MAX_REQUESTS_RANGE[2], help='Max requests per window (CLI).')
    parser.add_argument('--window', type=int, default=WINDOW_RANGE[2], help='Window size in seconds (CLI).')
    parser.add_argument('--requests', type=int, default=NUM_REQUESTS_RANGE[2], help='Number of test requests (CLI).')
    parser.add_argument('--watch', type=float, default=0, help='Seconds to keep polling metrics after the test (CLI).')
    args = parser.parse_args()
    if args.cli:
        sys.exit(run_headless(args))
    root = tk.Tk(); style = ttk.Style(root)
    try:
        if sys.platform == "win32": style.theme_use('winnative')
        elif sys.platform == "darwin": style.theme_use('aqua')
        else: style.theme_use('clam')
    except tk.TclError: pass
    style.configure('Accent.TButton', font='-weight bold')
    controller = MonitorController(None, {'base_url': args.url}); app = RateLimiterMonitorApp(master=root, controller=controller)
    controller.app = app; controller.start_monitoring(); app.mainloop()


if __name__ == "__main__":
    main()
