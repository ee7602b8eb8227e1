"""HTTP routes of the assessment service.

Handlers only translate HTTP to `AssessmentService` calls; authorization
beyond authentication and every state rule live in the service.
"""

from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request, Response, status

from packages.common.auth import User, get_current_user
from packages.common.rbac import SYSTEM, require_roles
from packages.schemas.assessment import (
    AnswersPayload, AttemptResult, LearnerResults, ProctoringEvent, Quiz, QuizAnalyticsReport,
    QuizSpec, QuizUpdate, ReviewPayload, SimilarPair, StartedAttempt,
)
from .service import AssessmentService

router = APIRouter(prefix="/assessment", tags=["assessment"])


def get_service(request: Request) -> AssessmentService:
    """Service instance created at startup; tests override this dependency."""
    return request.app.state.service


@router.post("/quizzes", status_code=status.HTTP_201_CREATED)
async def create_quiz(spec: QuizSpec, user: User = Depends(get_current_user),
                      svc: AssessmentService = Depends(get_service)) -> Dict[str, Any]:
    quiz = await svc.create_quiz(user, spec)
    return {"quiz_id": quiz.id, "total_points": quiz.total_points, "status": quiz.status}


@router.get("/quizzes/{quiz_id}")
async def get_quiz(quiz_id: str, user: User = Depends(get_current_user),
                   svc: AssessmentService = Depends(get_service)) -> Dict[str, Any]:
    return await svc.get_quiz(user, quiz_id)


@router.patch("/quizzes/{quiz_id}", response_model=Quiz)
async def update_quiz(quiz_id: str, patch: QuizUpdate, user: User = Depends(get_current_user),
                      svc: AssessmentService = Depends(get_service)) -> Quiz:
    return await svc.update_quiz(user, quiz_id, patch)


@router.delete("/quizzes/{quiz_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_quiz(quiz_id: str, user: User = Depends(get_current_user),
                      svc: AssessmentService = Depends(get_service)) -> Response:
    await svc.delete_quiz(user, quiz_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/quizzes/{quiz_id}/publish")
async def publish_quiz(quiz_id: str, user: User = Depends(get_current_user),
                       svc: AssessmentService = Depends(get_service)) -> Dict[str, datetime]:
    return {"published_at": await svc.publish_quiz(user, quiz_id)}


@router.post("/quizzes/{quiz_id}/archive")
async def archive_quiz(quiz_id: str, user: User = Depends(get_current_user),
                       svc: AssessmentService = Depends(get_service)) -> Dict[str, str]:
    quiz = await svc.archive_quiz(user, quiz_id)
    return {"quiz_id": quiz.id, "status": quiz.status}


@router.post("/quizzes/{quiz_id}/attempts", response_model=StartedAttempt, status_code=status.HTTP_201_CREATED)
async def start_attempt(quiz_id: str, request: Request, user: User = Depends(get_current_user),
                        svc: AssessmentService = Depends(get_service)) -> StartedAttempt:
    return await svc.start_attempt(
        quiz_id, user,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


@router.put("/attempts/{attempt_id}/answers")
async def save_answers(attempt_id: str, body: AnswersPayload, user: User = Depends(get_current_user),
                       svc: AssessmentService = Depends(get_service)) -> Dict[str, Any]:
    attempt = await svc.save_answers(attempt_id, user, body.answers)
    return {"attempt_id": attempt.id, "answered": len(attempt.answers)}


@router.post("/attempts/{attempt_id}/proctoring")
async def record_proctoring(attempt_id: str, event: ProctoringEvent, user: User = Depends(get_current_user),
                            svc: AssessmentService = Depends(get_service)) -> Dict[str, Any]:
    return {"attempt_id": attempt_id, "events": await svc.record_proctoring_event(attempt_id, user, event)}


@router.post("/attempts/{attempt_id}/submit", response_model=AttemptResult)
async def submit_attempt(attempt_id: str, body: AnswersPayload, user: User = Depends(get_current_user),
                         svc: AssessmentService = Depends(get_service)) -> AttemptResult:
    return await svc.submit_attempt(attempt_id, user, body.answers)


@router.post("/attempts/{attempt_id}/expire", response_model=AttemptResult)
async def expire_attempt(attempt_id: str, _: User = Depends(require_roles(SYSTEM)),
                         svc: AssessmentService = Depends(get_service)) -> AttemptResult:
    return await svc.expire_attempt(attempt_id)


@router.post("/attempts/{attempt_id}/abandon", response_model=AttemptResult)
async def abandon_attempt(attempt_id: str, user: User = Depends(get_current_user),
                          svc: AssessmentService = Depends(get_service)) -> AttemptResult:
    return await svc.abandon_attempt(attempt_id, user)


@router.post("/attempts/{attempt_id}/review", response_model=AttemptResult)
async def review_answer(attempt_id: str, body: ReviewPayload, user: User = Depends(get_current_user),
                        svc: AssessmentService = Depends(get_service)) -> AttemptResult:
    return await svc.review_answer(user, attempt_id, body.question_id, body.points)


@router.get("/attempts/{attempt_id}/results", response_model=AttemptResult)
async def attempt_results(attempt_id: str, user: User = Depends(get_current_user),
                          svc: AssessmentService = Depends(get_service)) -> AttemptResult:
    return await svc.get_results(attempt_id, user)


@router.get("/quizzes/{quiz_id}/results/{learner_id}", response_model=LearnerResults)
async def learner_results(quiz_id: str, learner_id: str, user: User = Depends(get_current_user),
                          svc: AssessmentService = Depends(get_service)) -> LearnerResults:
    return await svc.get_learner_results(quiz_id, learner_id, user)


@router.get("/quizzes/{quiz_id}/analytics", response_model=QuizAnalyticsReport)
async def quiz_analytics(quiz_id: str, user: User = Depends(get_current_user),
                         svc: AssessmentService = Depends(get_service)) -> QuizAnalyticsReport:
    return await svc.get_quiz_analytics(user, quiz_id)


@router.get("/quizzes/{quiz_id}/similarity/{question_id}", response_model=List[SimilarPair])
async def essay_similarity(quiz_id: str, question_id: str, user: User = Depends(get_current_user),
                           svc: AssessmentService = Depends(get_service)) -> List[SimilarPair]:
    return await svc.similar_essays(user, quiz_id, question_id)
