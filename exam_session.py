# exam_session.py
# -----------------------------------------------------------------------------
# Timed multiple-choice exam attempt (student side).
# - Question loader, countdown, answer recorder, navigation cursor, scorer
# - idle -> taking -> submitting -> result
# - One persisted exam_attempts row per session; the in-flight guard makes a
#   second submit trigger (timer expiry vs. manual finish) a no-op
# -----------------------------------------------------------------------------

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

IDLE = "idle"
TAKING = "taking"
SUBMITTING = "submitting"
RESULT = "result"

# Seconds an unfinished session is kept after its countdown would have ended
EVICT_GRACE_SEC = 300


class ExamError(RuntimeError):
    """Base class for exam-flow failures shown to the student."""


class QuestionLoadError(ExamError):
    pass


class SubmissionError(ExamError):
    pass


class ExamStateError(ExamError):
    pass


# -----------------------------------------------------------------------------
# Data
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Exam:
    id: str
    teacher_id: Optional[str]
    title: str
    duration_minutes: int

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Exam":
        return cls(
            id=str(row["id"]),
            teacher_id=(str(row["teacher_id"]) if row.get("teacher_id") else None),
            title=str(row.get("title") or ""),
            duration_minutes=max(0, int(row.get("duration_minutes") or 0)),
        )


@dataclass(frozen=True)
class Question:
    id: str
    exam_id: str
    text: str
    options: Tuple[str, ...]
    correct_index: int

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Question":
        options = tuple(str(o) for o in (row.get("options") or []))
        correct = int(row.get("correct_answer_index"))
        if not options:
            raise ValueError(f"question {row.get('id')} has no options")
        if not (0 <= correct < len(options)):
            raise ValueError(f"question {row.get('id')} correct index {correct} out of range")
        return cls(
            id=str(row["id"]),
            exam_id=str(row.get("exam_id") or ""),
            text=str(row.get("question_text") or ""),
            options=options,
            correct_index=correct,
        )


def load_questions(fetch_all: Callable, exam_id: str) -> List[Question]:
    """Fetch an exam's questions in the order storage returns them."""
    if not exam_id or not str(exam_id).strip():
        raise QuestionLoadError("Ujian tidak valid.")
    try:
        rows = fetch_all("""
            SELECT id, exam_id, question_text, options, correct_answer_index
              FROM public.questions
             WHERE exam_id = %s;
        """, (str(exam_id),))
        return [Question.from_row(r) for r in (rows or [])]
    except Exception as e:
        print(f"[exam] question load failed for {exam_id}: {e}")
        raise QuestionLoadError("Gagal memuat soal ujian.") from e


def compute_score(questions: Sequence[Question], answers: Dict[str, int]) -> float:
    """Percentage of questions whose recorded answer equals the correct index."""
    if not questions:
        return 0.0
    correct = sum(1 for q in questions if answers.get(q.id) == q.correct_index)
    return (correct / len(questions)) * 100.0


def review_answers(questions: Sequence[Question], answers: Dict[str, int]) -> List[Dict[str, Any]]:
    """Per-question breakdown for the result page."""
    out: List[Dict[str, Any]] = []
    for i, q in enumerate(questions, start=1):
        chosen = answers.get(q.id)
        out.append({
            "number": i,
            "text": q.text,
            "options": list(q.options),
            "correct_index": q.correct_index,
            "chosen_index": chosen,
            "is_correct": chosen == q.correct_index,
        })
    return out


def format_clock(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


# -----------------------------------------------------------------------------
# Countdown
# -----------------------------------------------------------------------------
class Countdown:
    """Whole-second countdown driven by explicit ticks.

    Nothing ticks on its own: the owner calls tick() once per elapsed second.
    On reaching zero the countdown stops itself and calls on_expire once.
    """

    def __init__(self, seconds: int, on_expire: Optional[Callable[[], Any]] = None):
        self.remaining = max(0, int(seconds))
        self.running = False
        self._on_expire = on_expire
        self._expired = False

    def start(self):
        if not self._expired:
            self.running = True

    def stop(self):
        self.running = False

    @property
    def expired(self) -> bool:
        return self._expired

    def tick(self) -> int:
        if not self.running:
            return self.remaining
        if self.remaining > 0:
            self.remaining -= 1
        if self.remaining == 0:
            self.running = False
            if not self._expired:
                self._expired = True
                if self._on_expire:
                    self._on_expire()
        return self.remaining


# -----------------------------------------------------------------------------
# Attempt session
# -----------------------------------------------------------------------------
class ExamSession:
    """In-memory attempt for one student on one exam.

    create_attempt(record) persists the finished attempt and returns the stored
    row; it is the only write this class performs.
    """

    def __init__(self, exam: Exam, questions: Sequence[Question],
                 student_id: str, student_uid: str,
                 create_attempt: Callable[[Dict[str, Any]], Dict[str, Any]],
                 clock: Callable[[], float] = time.monotonic,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.exam = exam
        self.questions: Tuple[Question, ...] = tuple(questions)
        self.student_id = student_id
        self.student_uid = student_uid
        self._create_attempt = create_attempt
        self._clock = clock
        self._now = now

        self.state = IDLE
        self.cursor = 0
        self.attempt: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None
        self._answers: Dict[str, int] = {}
        self._by_id = {q.id: q for q in self.questions}
        self._inflight = threading.Lock()
        self._last_sync: Optional[float] = None
        self.started_at: Optional[float] = None
        self.countdown = Countdown(exam.duration_minutes * 60, on_expire=self._on_expire)

    # ---- read side -----------------------------------------------------------
    @property
    def answers(self) -> Dict[str, int]:
        return dict(self._answers)

    @property
    def remaining(self) -> int:
        return self.countdown.remaining

    @property
    def question_count(self) -> int:
        return len(self.questions)

    @property
    def current_question(self) -> Optional[Question]:
        if not self.questions:
            return None
        return self.questions[self.cursor]

    @property
    def is_last(self) -> bool:
        return self.cursor >= max(0, self.question_count - 1)

    # ---- lifecycle -----------------------------------------------------------
    def start(self):
        if self.state != IDLE:
            raise ExamStateError("Ujian sudah dimulai.")
        self.state = TAKING
        self._last_sync = self._clock()
        self.started_at = self._last_sync
        self.countdown.start()

    def close(self):
        """Leave the exam view: stop the countdown and drop in-progress state."""
        self.countdown.stop()
        if self.state != RESULT:
            self._answers.clear()

    # ---- timer ---------------------------------------------------------------
    def tick(self) -> int:
        if self.state not in (TAKING, SUBMITTING):
            return self.countdown.remaining
        return self.countdown.tick()

    def sync(self) -> int:
        """Catch the countdown up with the clock, one tick per whole second."""
        if self._last_sync is None or not self.countdown.running:
            return self.countdown.remaining
        elapsed = int(self._clock() - self._last_sync)
        for _ in range(max(0, elapsed)):
            self._last_sync += 1
            self.tick()
            if not self.countdown.running:
                break
        return self.countdown.remaining

    def _on_expire(self):
        print(f"[exam] time up: exam={self.exam.id} student={self.student_uid}")
        try:
            self.submit()
        except SubmissionError as e:
            self.last_error = str(e)

    # ---- answers / navigation -----------------------------------------------
    def select_answer(self, question_id: str, option_index: int):
        if self.state != TAKING or self._inflight.locked():
            raise ExamStateError("Jawaban tidak dapat diubah lagi.")
        q = self._by_id.get(str(question_id))
        if q is None:
            raise ValueError(f"unknown question {question_id}")
        idx = int(option_index)
        if not (0 <= idx < len(q.options)):
            raise ValueError(f"option {idx} out of range for question {q.id}")
        self._answers[q.id] = idx

    def next_question(self) -> int:
        self.cursor = min(max(0, self.question_count - 1), self.cursor + 1)
        return self.cursor

    def previous_question(self) -> int:
        self.cursor = max(0, self.cursor - 1)
        return self.cursor

    # ---- submission ----------------------------------------------------------
    def submit(self) -> Optional[Dict[str, Any]]:
        """Score and persist once. Returns the stored row, or None if another
        submission is in flight or already finished."""
        if not self._inflight.acquire(blocking=False):
            return None
        try:
            if self.state != TAKING:
                return None
            self.state = SUBMITTING
            answers = dict(self._answers)
            record = {
                "exam_id": self.exam.id,
                "student_id": self.student_id,
                "student_uid": self.student_uid,
                "score": compute_score(self.questions, answers),
                "answers": answers,
                "completed_at": self._now().isoformat(),
            }
            try:
                row = self._create_attempt(record)
            except Exception as e:
                self.state = TAKING
                print(f"[exam] submit failed: exam={self.exam.id} student={self.student_uid}: {e}")
                raise SubmissionError(str(e) or "Gagal mengirimkan jawaban.") from e
            self.attempt = dict(row or record)
            self.state = RESULT
            self.last_error = None
            self.countdown.stop()
            return self.attempt
        finally:
            self._inflight.release()

    # ---- result view ---------------------------------------------------------
    def review(self) -> List[Dict[str, Any]]:
        return review_answers(self.questions, self._answers)

    def stale(self, grace: int = EVICT_GRACE_SEC) -> bool:
        """Finished, or started longer ago than the exam duration plus grace."""
        if self.state == RESULT:
            return True
        if self.started_at is None:
            return False
        return self._clock() - self.started_at > self.exam.duration_minutes * 60 + grace


# -----------------------------------------------------------------------------
# Registry (one per app)
# -----------------------------------------------------------------------------
class SessionRegistry:
    """Token -> ExamSession; sessions are never shared between students."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, ExamSession] = {}

    def put(self, token: str, session: ExamSession):
        self.purge()
        with self._lock:
            self._sessions[token] = session

    def purge(self) -> int:
        """Drop finished and abandoned sessions; returns how many went."""
        with self._lock:
            stale = [t for t, s in self._sessions.items() if s.stale()]
            dropped = [self._sessions.pop(t) for t in stale]
        for s in dropped:
            s.close()
        return len(dropped)

    def get(self, token: str, student_uid: str) -> Optional[ExamSession]:
        with self._lock:
            s = self._sessions.get(token)
        if s is None or s.student_uid != student_uid:
            return None
        return s

    def discard(self, token: str) -> Optional[ExamSession]:
        with self._lock:
            s = self._sessions.pop(token, None)
        if s is not None:
            s.close()
        return s

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
