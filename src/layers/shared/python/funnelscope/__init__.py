"""funnelscope: conversion-funnel analytics for the marketing site."""

__version__ = "0.1.0"
