from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status

from coursegen.api.deps import get_workflows
from coursegen.api.models import (
  CourseResponse,
  CreateCourseRequest,
  GenerateContentRequest,
  GenerateQuizzesRequest,
  JobListResponse,
  JobResponse,
  RegenerateRequest,
  StartWorkflowRequest,
  WorkflowStatusResponse,
)
from coursegen.services.workflows import WorkflowService

router = APIRouter()
logger = logging.getLogger(__name__)

Workflows = Annotated[WorkflowService, Depends(get_workflows)]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=CourseResponse)
async def create_course(request: CreateCourseRequest, workflows: Workflows) -> CourseResponse:
  course = await workflows.create_course(title=request.title, description=request.description, level=request.level)
  return CourseResponse(course_id=course.course_id, title=course.title, slug=course.slug, description=course.description, level=course.level, generation_status=course.generation_status)


@router.post("/{course_id}/generate", status_code=status.HTTP_202_ACCEPTED, response_model=JobResponse)
async def start_workflow(course_id: str, request: StartWorkflowRequest, workflows: Workflows) -> JobResponse:
  """Queue the outline stage; article and enrichment jobs fan out from it."""
  job = await workflows.start_workflow(course_id, regenerate=request.regenerate, context=request.context)
  return JobResponse.from_record(job)


@router.post("/{course_id}/content", status_code=status.HTTP_202_ACCEPTED, response_model=JobListResponse)
async def generate_content(course_id: str, request: GenerateContentRequest, workflows: Workflows) -> JobListResponse:
  jobs = await workflows.generate_content(course_id, section_id=request.section_id, regenerate=request.regenerate)
  return JobListResponse(jobs=[JobResponse.from_record(job) for job in jobs])


@router.post("/{course_id}/quizzes", status_code=status.HTTP_202_ACCEPTED, response_model=JobListResponse)
async def generate_quizzes(course_id: str, request: GenerateQuizzesRequest, workflows: Workflows) -> JobListResponse:
  jobs = await workflows.generate_quizzes(course_id, regenerate=request.regenerate, include_final_exam=request.include_final_exam)
  return JobListResponse(jobs=[JobResponse.from_record(job) for job in jobs])


@router.post("/{course_id}/final-exam-bank", status_code=status.HTTP_202_ACCEPTED, response_model=JobResponse)
async def generate_final_exam_bank(course_id: str, workflows: Workflows, regenerate: bool = False) -> JobResponse:
  job = await workflows.generate_final_exam_bank(course_id, regenerate=regenerate)
  return JobResponse.from_record(job)


@router.post("/{course_id}/regenerate", status_code=status.HTTP_202_ACCEPTED, response_model=JobResponse)
async def regenerate(course_id: str, request: RegenerateRequest, workflows: Workflows) -> JobResponse:
  job = await workflows.regenerate(course_id, request.stage, request.target_id)
  return JobResponse.from_record(job)


@router.get("/{course_id}/status", response_model=WorkflowStatusResponse)
async def workflow_status(course_id: str, workflows: Workflows) -> WorkflowStatusResponse:
  return WorkflowStatusResponse.from_status(await workflows.status(course_id))
