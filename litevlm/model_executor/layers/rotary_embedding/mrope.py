# SPDX-License-Identifier: Apache-2.0
from collections.abc import Sequence

import torch

from .base import RotaryEmbeddingBase


class MRotaryEmbedding(RotaryEmbeddingBase):
    """Rotary embedding with separate temporal/height/width position axes.

    The rotary frequencies are split into three sections (`mrope_section`,
    in units of frequency pairs); section `i` is rotated by the position on
    axis `i`. Text tokens carry identical positions on all three axes, which
    reduces this to the standard 1-D rotary embedding.
    """

    def __init__(
        self,
        head_size: int,
        rotary_dim: int,
        max_position_embeddings: int,
        base: float,
        is_neox_style: bool,
        mrope_section: Sequence[int],
    ) -> None:
        super().__init__(head_size, rotary_dim, max_position_embeddings, base, is_neox_style)
        self.mrope_section = list(mrope_section)
        if sum(self.mrope_section) != rotary_dim // 2:
            raise ValueError(
                f"mrope_section {self.mrope_section} must sum to rotary_dim // 2 "
                f"= {rotary_dim // 2}"
            )

    def forward(
        self,
        positions: torch.Tensor,
        query: torch.Tensor,
        key: torch.Tensor,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            positions:
                [num_tokens,] (text only) or
                [3, num_tokens] (T/H/W positions with multimodal inputs)
            query: [num_tokens, num_heads * head_size]
            key: [num_tokens, num_kv_heads * head_size]
        """
        cos, sin = self._compute_cos_sin(positions)
        if positions.ndim == 2:
            cos = torch.cat(
                [m[i] for i, m in enumerate(cos.split(self.mrope_section, dim=-1))],
                dim=-1,
            )
            sin = torch.cat(
                [m[i] for i, m in enumerate(sin.split(self.mrope_section, dim=-1))],
                dim=-1,
            )
        return self._rotate_query_key(query, key, cos, sin)

    @staticmethod
    def get_input_positions(
        input_ids: Sequence[int],
        image_grid_thw: Sequence[Sequence[int]],
        video_grid_thw: Sequence[Sequence[int]],
        spatial_merge_size: int,
        image_token_id: int | None,
        video_token_id: int | None,
        video_second_per_grid: Sequence[float] | None = None,
        tokens_per_second: float | None = None,
    ) -> tuple[torch.Tensor, int]:
        """Compute 3-axis positions for a fused text/visual sequence.

        Text runs advance all three axes together. A visual run starts at the
        position after the preceding text and spreads its tokens over the
        (t, h, w) grid of merged patches; the next text run resumes after the
        largest position used by that grid.

        Returns:
            positions: [3, num_tokens]
            delta: offset to add to a cache length to get the next position
        """
        input_ids = list(input_ids)
        image_iter = iter(image_grid_thw)
        video_iter = iter(enumerate(video_grid_thw))
        chunks: list[torch.Tensor] = []
        next_pos = 0
        idx = 0
        text_start = 0
        num_tokens = len(input_ids)

        while idx < num_tokens:
            token = input_ids[idx]
            if token == image_token_id:
                grid = next(image_iter, None)
                scale = 1.0
            elif token == video_token_id:
                item = next(video_iter, None)
                grid = None if item is None else item[1]
                scale = 1.0
                if item is not None and tokens_per_second and video_second_per_grid:
                    scale = video_second_per_grid[item[0]] * tokens_per_second
            else:
                idx += 1
                continue
            if grid is None:
                # More placeholders than visual inputs; treat as text and let
                # fusion report the mismatch.
                idx += 1
                continue

            text_len = idx - text_start
            if text_len:
                chunks.append(
                    torch.arange(text_len).view(1, -1).expand(3, -1) + next_pos
                )
                next_pos += text_len

            t, h, w = (int(v) for v in grid)
            llm_h, llm_w = h // spatial_merge_size, w // spatial_merge_size
            t_index = (
                (torch.arange(t).view(-1, 1).expand(-1, llm_h * llm_w) * scale)
                .long()
                .flatten()
            )
            h_index = torch.arange(llm_h).view(1, -1, 1).expand(t, -1, llm_w).flatten()
            w_index = torch.arange(llm_w).view(1, 1, -1).expand(t, llm_h, -1).flatten()
            grid_pos = torch.stack([t_index, h_index, w_index]) + next_pos
            chunks.append(grid_pos)
            next_pos = int(grid_pos.max()) + 1

            idx += t * llm_h * llm_w
            text_start = idx

        if text_start < num_tokens:
            text_len = num_tokens - text_start
            chunks.append(torch.arange(text_len).view(1, -1).expand(3, -1) + next_pos)
            next_pos += text_len

        if not chunks:
            return torch.zeros(3, 0, dtype=torch.long), 0
        positions = torch.cat(chunks, dim=1)[:, :num_tokens]
        delta = next_pos - num_tokens
        return positions, delta
