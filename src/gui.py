from __future__ import annotations

import logging
import queue
import time
import tkinter as tk
from tkinter import ttk, messagebox

import cv2
from PIL import Image, ImageTk

from calibration import CalibrationPreconditionError
from config import ALARM_MODES, WatchConfig, WatchSettings, load_settings, save_settings
from live_feed import FrameAccessBlocked, LiveFeedConfig, LiveFeedController
from live_motion import MotionWatch
from zones import ZoneLimitError

logger = logging.getLogger(__name__)

ZONE_MIN_PX = 8                  # smallest drag accepted as a zone (screen px)
BEEP_EVERY_S = 1.1
TOGGLE_KEYS = {"0", "Shift_R"}   # enable / disable
CLEAR_KEYS = {"1", "Shift_L"}    # clear alarm


class MotionWatchGUI(tk.Tk):
    def __init__(self, cfg: WatchConfig | None = None):
        super().__init__()
        self.title("MotionWatch")
        self.geometry("1000x720")

        # State
        self.cfg = cfg or WatchConfig()
        self.feed: LiveFeedController | None = None
        self.logQueue = queue.Queue()

        self.watch = MotionWatch(self.cfg, load_settings(self.cfg), logFn=self.logQueue.put)
        self.watch.addSettingsListener(self._saveSettings)

        self.drawingZone = False
        self.dragStart = None
        self.dragCurrent = None
        self.viewRect = (0, 0, 1, 1)     # where the frame sits inside the label
        self.liveTkImage = None
        self.lastBeep = 0.0

        #Top Controls
        topBar = ttk.Frame(self, padding=10)
        topBar.pack(fill="x")

        ttk.Label(topBar, text="Source").pack(side="left")
        self.sourceVar = tk.StringVar(value="0")
        ttk.Entry(topBar, textvariable=self.sourceVar, width=28).pack(side="left", padx=8)

        self.startBtn = ttk.Button(topBar, text="Start", command=self.startFeed)
        self.startBtn.pack(side="left")
        self.stopBtn = ttk.Button(topBar, text="Stop", command=self.stopFeed, state="disabled")
        self.stopBtn.pack(side="left", padx=8)

        self.flipVar = tk.BooleanVar(value=False)
        ttk.Checkbutton(topBar, text="Mirror", variable=self.flipVar).pack(side="right")

        self.enabledVar = tk.BooleanVar(value=True)
        ttk.Checkbutton(topBar, text="Armed", variable=self.enabledVar, command=self.applyEnabled).pack(side="right", padx=8)

        # Video area
        self.imageLabel = ttk.Label(self, anchor="center")
        self.imageLabel.pack(fill="both", expand=True, padx=10, pady=(0, 10))
        self.imageLabel.bind("<ButtonPress-1>", self._onZoneDown)
        self.imageLabel.bind("<B1-Motion>", self._onZoneMove)
        self.imageLabel.bind("<ButtonRelease-1>", self._onZoneUp)

        #Detection Settings
        settingsFrame = ttk.LabelFrame(self, text="Detection", padding=10)
        settingsFrame.pack(fill="x", padx=10, pady=(0, 10))

        ttk.Label(settingsFrame, text="Threshold").grid(row=0, column=0, sticky="w")
        self.thresholdVar = tk.DoubleVar(value=self.watch.threshold)
        ttk.Scale(
            settingsFrame,
            from_=self.cfg.thr_min,
            to=self.cfg.thr_max,
            variable=self.thresholdVar,
            orient="horizontal",
            command=lambda _=None: self.applyThreshold(),
        ).grid(row=0, column=1, sticky="ew", padx=8)
        self.thresholdValue = ttk.Label(settingsFrame, text="", width=24)
        self.thresholdValue.grid(row=0, column=2, sticky="w")

        ttk.Button(settingsFrame, text="Auto-calibrate", command=self.startCalibration).grid(row=0, column=3, padx=4)
        ttk.Button(settingsFrame, text="Reset", command=self.watch.resetThreshold).grid(row=0, column=4, padx=4)

        ttk.Label(settingsFrame, text="Alarm reaction").grid(row=1, column=0, sticky="w", pady=(10, 0))
        self.modeVar = tk.StringVar(value=self.watch.snapshot().alarmMode)
        modeBox = ttk.Combobox(settingsFrame, textvariable=self.modeVar, values=list(ALARM_MODES), state="readonly", width=10)
        modeBox.grid(row=1, column=1, sticky="w", padx=8, pady=(10, 0))
        modeBox.bind("<<ComboboxSelected>>", lambda _=None: self.watch.setAlarmMode(self.modeVar.get()))

        ttk.Label(settingsFrame, text="Overlay opacity").grid(row=2, column=0, sticky="w", pady=(10, 0))
        self.opacityVar = tk.DoubleVar(value=0.32)
        ttk.Scale(settingsFrame, from_=0.05, to=0.95, variable=self.opacityVar, orient="horizontal").grid(
            row=2, column=1, sticky="ew", padx=8, pady=(10, 0)
        )
        ttk.Button(settingsFrame, text="Clear alarm", command=self.watch.clearAlarm).grid(row=1, column=3, padx=4, pady=(10, 0))

        ttk.Button(settingsFrame, text="Add zone", command=self.startZoneDraw).grid(row=3, column=0, sticky="w", pady=(10, 0))
        ttk.Button(settingsFrame, text="Undo zone", command=self.watch.undoZone).grid(row=3, column=1, sticky="w", padx=8, pady=(10, 0))
        ttk.Button(settingsFrame, text="Clear zones", command=self.watch.clearZones).grid(row=3, column=3, padx=4, pady=(10, 0))

        settingsFrame.columnconfigure(1, weight=1)

        #Status / Log
        statusFrame = ttk.LabelFrame(self, text="Status", padding=10)
        statusFrame.pack(fill="x", padx=10, pady=(0, 10))

        self.statusVar = tk.StringVar(value="")
        ttk.Label(statusFrame, textvariable=self.statusVar).pack(fill="x")

        self.logBox = tk.Text(statusFrame, height=6, wrap="word")
        self.logBox.pack(fill="both", expand=True, pady=(6, 0))
        self.logBox.config(state="disabled")

        self.bind_all("<KeyPress>", self._onKey)
        self.protocol("WM_DELETE_WINDOW", self.onClose)

        self.watch.start()
        self.writeLog("Ready. Enter a camera index or video path and press Start.")
        self.after(100, self._drainLogQueue)
        self.after(100, self._updateFrame)

    #Logging
    def writeLog(self, msg: str):
        self.logBox.config(state="normal")
        self.logBox.insert("end", msg + "\n")
        self.logBox.see("end")
        self.logBox.config(state="disabled")

    def _drainLogQueue(self):
        try:
            while True:
                self.writeLog(self.logQueue.get_nowait())
        except queue.Empty:
            pass
        self.after(100, self._drainLogQueue)

    def _saveSettings(self, settings: WatchSettings):
        try:
            save_settings(settings, self.cfg)
        except OSError as e:
            logger.warning("Could not save settings: %s", e)

    #Feed
    def startFeed(self):
        if self.feed is not None:
            return

        feed = LiveFeedController(LiveFeedConfig(
            source=self.sourceVar.get().strip() or "0",
            sample_w=self.cfg.sample_w,
            sample_h=self.cfg.sample_h,
            flip_horizontal=bool(self.flipVar.get()),
        ))
        try:
            feed.startFeed()
        except FrameAccessBlocked as e:
            messagebox.showerror("Camera Permission / Access", str(e))
            self.writeLog(f"ERROR (Live Feed): {e}")
            return

        self.feed = feed
        self.watch.setVideoSource(feed)
        self.startBtn.config(state="disabled")
        self.stopBtn.config(state="normal")
        self.writeLog("Live feed started.")

    def stopFeed(self):
        self.watch.setVideoSource(None)
        if self.feed is not None:
            self.feed.stopFeed()
            self.feed = None
        self.stopZoneDraw()
        self.startBtn.config(state="normal")
        self.stopBtn.config(state="disabled")
        self.imageLabel.config(image="")
        self.liveTkImage = None
        self.writeLog("Live feed stopped.")

    #Commands
    def applyThreshold(self):
        thr = self.watch.setThreshold(self.thresholdVar.get())
        self.thresholdValue.config(text=f"{thr:.2f}")

    def applyEnabled(self):
        if bool(self.enabledVar.get()):
            self.watch.enable()
        else:
            self.watch.disable()

    def startCalibration(self):
        try:
            self.watch.startCalibration()
        except CalibrationPreconditionError as e:
            self.writeLog(str(e))

    def startZoneDraw(self):
        snap = self.watch.snapshot()
        if self.feed is None or snap.blocked or snap.calibrating:
            return
        if len(snap.zones) >= self.cfg.zones_max:
            self.writeLog(f"Zone limit ({self.cfg.zones_max}).")
            return
        self.drawingZone = True
        self.watch.clearAlarm()
        self.imageLabel.config(cursor="crosshair")
        self.writeLog("Add zone: drag a rectangle over the video (Esc cancels).")

    def stopZoneDraw(self, msg: str | None = None):
        if not self.drawingZone:
            return
        self.drawingZone = False
        self.dragStart = self.dragCurrent = None
        self.imageLabel.config(cursor="")
        if msg:
            self.writeLog(msg)

    #Zone drawing
    def _clampToView(self, x, y):
        vx, vy, vw, vh = self.viewRect
        return min(max(x, vx), vx + vw), min(max(y, vy), vy + vh)

    def _onZoneDown(self, event):
        if not self.drawingZone:
            return
        vx, vy, vw, vh = self.viewRect
        if not (vx <= event.x <= vx + vw and vy <= event.y <= vy + vh):
            return
        self.dragStart = self.dragCurrent = (event.x, event.y)

    def _onZoneMove(self, event):
        if self.dragStart is not None:
            self.dragCurrent = (event.x, event.y)

    def _onZoneUp(self, event):
        if self.dragStart is None:
            return
        vx, vy, vw, vh = self.viewRect
        xA, yA = self._clampToView(*self.dragStart)
        xB, yB = self._clampToView(event.x, event.y)

        wPx, hPx = abs(xB - xA), abs(yB - yA)
        if wPx < ZONE_MIN_PX or hPx < ZONE_MIN_PX:
            self.stopZoneDraw("Zone too small.")
            return

        rect = {
            "x": (min(xA, xB) - vx) / vw,
            "y": (min(yA, yB) - vy) / vh,
            "w": wPx / vw,
            "h": hPx / vh,
        }
        try:
            self.watch.addZone(rect)
        except ZoneLimitError as e:
            self.writeLog(str(e))
        self.stopZoneDraw()

    def _onKey(self, event):
        if isinstance(event.widget, (tk.Entry, ttk.Entry, tk.Text)):
            return
        if event.keysym == "Escape":
            self.stopZoneDraw("Adding zone cancelled.")
            return
        if self.drawingZone:
            return
        if event.keysym in TOGGLE_KEYS or event.char in TOGGLE_KEYS:
            self.enabledVar.set(self.watch.toggleEnabled())
        elif event.keysym in CLEAR_KEYS or event.char in CLEAR_KEYS:
            self.watch.clearAlarm()

    #Rendering
    def _resizeToFit(self, frameRgb, targetW: int, targetH: int):
        h, w = frameRgb.shape[:2]
        scale = min(targetW / w, targetH / h)
        newW = max(1, int(w * scale))
        newH = max(1, int(h * scale))
        return cv2.resize(frameRgb, (newW, newH), interpolation=cv2.INTER_AREA)

    def _drawOverlay(self, frameRgb, snap):
        h, w = frameRgb.shape[:2]

        if snap.visualActive:
            red = frameRgb.copy()
            red[:] = (255, 0, 0)
            alpha = float(self.opacityVar.get())
            frameRgb = cv2.addWeighted(red, alpha, frameRgb, 1.0 - alpha, 0)

        for i, z in enumerate(snap.zones, start=1):
            p0 = (int(z.x * w), int(z.y * h))
            p1 = (int((z.x + z.w) * w), int((z.y + z.h) * h))
            cv2.rectangle(frameRgb, p0, p1, (120, 200, 255), 2)
            cv2.putText(frameRgb, str(i), (p0[0] + 4, p0[1] + 18), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (120, 200, 255), 2, cv2.LINE_AA)

        if snap.alarm:
            cv2.putText(frameRgb, "MOTION", (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 1.0, (255, 60, 60), 2, cv2.LINE_AA)
        return frameRgb

    def _updateFrame(self):
        snap = self.watch.snapshot()
        self.statusVar.set(self.watch.statusLine())
        self.thresholdValue.config(text=f"{snap.threshold:.2f} ({snap.sensitivity})")
        if abs(float(self.thresholdVar.get()) - snap.threshold) > self.cfg.thr_step:
            self.thresholdVar.set(snap.threshold)
        if self.modeVar.get() != snap.alarmMode:
            self.modeVar.set(snap.alarmMode)

        if snap.audioActive and time.monotonic() - self.lastBeep >= BEEP_EVERY_S:
            self.bell()
            self.lastBeep = time.monotonic()

        frameRgb = self.feed.readFrameRgb() if self.feed is not None else None
        targetW = self.imageLabel.winfo_width()
        targetH = self.imageLabel.winfo_height()

        if frameRgb is not None and targetW > 1 and targetH > 1:
            frameRgb = self._resizeToFit(frameRgb, targetW, targetH)
            frameRgb = self._drawOverlay(frameRgb, snap)
            h, w = frameRgb.shape[:2]
            self.viewRect = ((targetW - w) // 2, (targetH - h) // 2, w, h)

            if self.dragStart is not None and self.dragCurrent is not None:
                vx, vy = self.viewRect[:2]
                xA, yA = self._clampToView(*self.dragStart)
                xB, yB = self._clampToView(*self.dragCurrent)
                cv2.rectangle(frameRgb, (xA - vx, yA - vy), (xB - vx, yB - vy), (160, 240, 255), 2)

            self.liveTkImage = ImageTk.PhotoImage(Image.fromarray(frameRgb))
            self.imageLabel.config(image=self.liveTkImage)

        delayMs = self.feed.getDelayMs() if self.feed is not None else 100
        self.after(max(15, delayMs), self._updateFrame)

    #Close
    def onClose(self):
        self.watch.stop()
        if self.feed is not None:
            self.feed.stopFeed()
            self.feed = None
        self.destroy()


def run_gui():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = MotionWatchGUI()
    app.mainloop()


if __name__ == "__main__":
    run_gui()
