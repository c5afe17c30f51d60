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
"""Saga traffic over the message broker: wire codec, channel and listener."""

from sagaflow.saga.channel.channel import SagaMessageChannel
from sagaflow.saga.channel.codec import (
    CommandMessage,
    EventMessage,
    OutcomeMessage,
    decode_command,
    decode_event,
    decode_outcome,
    encode_command,
    encode_event,
    encode_outcome,
)
from sagaflow.saga.channel.listener import SagaEventListener

__all__ = [
    "CommandMessage",
    "EventMessage",
    "OutcomeMessage",
    "SagaEventListener",
    "SagaMessageChannel",
    "decode_command",
    "decode_event",
    "decode_outcome",
    "encode_command",
    "encode_event",
    "encode_outcome",
]
