from __future__ import annotations

from asdl_adt import ADT

from .handles import Handle

# --------------------------------------------------------------------------- #
# --------------------------------------------------------------------------- #
# Schedule directives
#
#   Loop handles are scoped by the stage handle next to them.  Handles named
#   after the result of a directive (split loops, tiles, the fused loop) are
#   carried on the directive itself.  Optional buffer and unit names request a
#   name for the new structure; a default is derived when they are absent.


D = ADT(
    """
module Directive {
    directive = Split( handle stage, handle loop, int factor,
                       handle outer, handle inner )
              | Tile( handle stage, handle x, handle y, int fx, int fy,
                      handle* tiles )
              | Reorder( handle stage, handle* loops )
              | Unroll( handle stage, handle loop, int factor )
              | Parallel( handle stage, handle loop )
              | Pipeline( handle stage, handle loop, int ii )
              | ThreadBind( handle stage, handle loop, int dim )
              | Fuse( handle stage, handle* loops, handle fused )
              | ComputeAt( handle axis, handle producer, handle consumer )
              | Partition( string array, string partition_kind, int dim,
                           int? factor )
              | ReuseAt( string array, handle stage, handle axis,
                         string? buffer )
              | BufferAt( string array, handle stage, handle axis,
                          string? buffer )
              | Outline( handle* stages, string? unit )
              | Reshape( string array, int* shape )
              | Layout( string array, int* perm )
              | InterKernel( string array, int? depth )
}""",
    ext_types={
        "handle": Handle,
        "int": int,
    },
)


def handles_of(d):
    """every handle referenced by the directive `d`"""
    if isinstance(d, D.Split):
        return [d.stage, d.loop, d.outer, d.inner]
    elif isinstance(d, D.Tile):
        return [d.stage, d.x, d.y, *d.tiles]
    elif isinstance(d, D.Reorder):
        return [d.stage, *d.loops]
    elif isinstance(d, (D.Unroll, D.Parallel, D.Pipeline, D.ThreadBind)):
        return [d.stage, d.loop]
    elif isinstance(d, D.Fuse):
        return [d.stage, *d.loops, d.fused]
    elif isinstance(d, D.ComputeAt):
        return [d.axis, d.producer, d.consumer]
    elif isinstance(d, (D.ReuseAt, D.BufferAt)):
        return [d.stage, d.axis]
    elif isinstance(d, D.Outline):
        return list(d.stages)
    elif isinstance(d, (D.Partition, D.Reshape, D.Layout, D.InterKernel)):
        return []
    else:
        raise NotImplementedError(f"bad case {type(d)}")


def produced_handles(d):
    """handles bound by a successful application of `d`"""
    if isinstance(d, D.Split):
        return [d.outer, d.inner]
    elif isinstance(d, D.Tile):
        return list(d.tiles)
    elif isinstance(d, D.Fuse):
        return [d.fused]
    return []
