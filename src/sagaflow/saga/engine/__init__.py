# Copyright 2026 Firefly Software Solutions Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Saga engine — pure transition function and the CAS-driven engine around it."""

from sagaflow.saga.engine.saga_engine import EvaluationResult, SagaEngine
from sagaflow.saga.engine.signals import (
    AbortSignal,
    CompensationOutcomeSignal,
    CompensationRetrySignal,
    CompensationTimeoutSignal,
    LifecycleNote,
    SkipCompensationSignal,
    StepOutcomeSignal,
    StepTimeoutSignal,
    TimerRequest,
)
from sagaflow.saga.engine.transition import Transition, TransitionPolicy, evaluate, start

__all__ = [
    "AbortSignal",
    "CompensationOutcomeSignal",
    "CompensationRetrySignal",
    "CompensationTimeoutSignal",
    "EvaluationResult",
    "LifecycleNote",
    "SagaEngine",
    "SkipCompensationSignal",
    "StepOutcomeSignal",
    "StepTimeoutSignal",
    "TimerRequest",
    "Transition",
    "TransitionPolicy",
    "evaluate",
    "start",
]
